"""Container entrypoint for the DataHub actions worker."""
import sys

from datahub_bootstrap.bootstrap import main as bootstrap_main


def main():
    bootstrap_main("actions", sys.argv[1:])


if __name__ == "__main__":
    main()
