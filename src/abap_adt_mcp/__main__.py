"""Entry point for ``python -m abap_adt_mcp``."""

import sys


def main():
    from abap_adt_mcp.tool_server.server import main as server_main

    return server_main()


if __name__ == "__main__":
    sys.exit(main())
