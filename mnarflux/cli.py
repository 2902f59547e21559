import logging
from importlib.resources import files
from pathlib import Path

import typer
import yaml

from mnarflux.utils.utils import setup_logging

app = typer.Typer(help="MNARflux: missingness-aware differential proteomics")


@app.command()
def init(path: Path = typer.Argument(Path("mnarflux_config.yaml"), help="Where to write the template")):
    """
    Generate a config scaffold at the given path.
    """
    default_yaml = files("mnarflux.templates").joinpath("user_template.yaml").read_text()
    path.write_text(default_yaml)
    typer.echo(f"Template written to {path}")


@app.command()
def run(
    config: Path = typer.Option(..., exists=True, dir_okay=False, help="Path to YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """
    Run the MNARflux pipeline from a YAML config.
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    config_data = yaml.safe_load(config.read_text()) or {}

    from mnarflux.main import run_pipeline
    run_pipeline(config=config_data)


if __name__ == "__main__":
    app()
