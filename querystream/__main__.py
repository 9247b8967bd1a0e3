"""``python -m querystream`` starts the server."""

import sys

from querystream.cli import cli


if __name__ == "__main__":
    cli.main(args=["serve", *sys.argv[1:]], prog_name="querystream", obj={})
