"""Allow ``python -m winprov``."""

from winprov.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
