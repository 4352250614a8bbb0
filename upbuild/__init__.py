"""upbuild: watch an upstream repository, build new versions, publish releases."""

__version__ = "0.1.0"
