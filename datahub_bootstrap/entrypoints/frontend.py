"""Container entrypoint for the DataHub frontend."""
import sys

from datahub_bootstrap.bootstrap import main as bootstrap_main


def main():
    bootstrap_main("frontend", sys.argv[1:])


if __name__ == "__main__":
    main()
