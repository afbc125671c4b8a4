"""Container entrypoint for the DataHub metadata service (GMS)."""
import sys

from datahub_bootstrap.bootstrap import main as bootstrap_main


def main():
    bootstrap_main("gms", sys.argv[1:])


if __name__ == "__main__":
    main()
