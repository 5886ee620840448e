
import argparse
import os


def main():
    parser = argparse.ArgumentParser(description="Omega Observer MCP Server")
    parser.add_argument("--home", type=str, default=None, help="Omega state directory (sets OMEGA_HOME)")
    parser.add_argument("--transport", choices=["stdio", "sse", "streamable-http"], default="stdio",
                        help="MCP transport (default: stdio)")
    args = parser.parse_args()

    if args.home:
        os.environ["OMEGA_HOME"] = args.home

    from . import mcp
    if args.transport == "stdio":
        mcp.run()
    else:
        mcp.run(transport=args.transport)


if __name__ == "__main__":
    main()
