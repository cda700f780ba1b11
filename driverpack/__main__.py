"""Allow running DriverPack Fetcher with ``python -m driverpack``."""

from driverpack.cli.cli import main

if __name__ == "__main__":
    main()
