"""Module entrypoint for ``python -m dagforge``."""

from dagforge.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
