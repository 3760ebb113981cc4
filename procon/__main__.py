"""Allow ``python -m procon``."""

from procon.main import cli

if __name__ == "__main__":
    cli()
