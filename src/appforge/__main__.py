"""Allow ``python -m appforge``."""

from appforge.cli.main import app

if __name__ == "__main__":
    app()
