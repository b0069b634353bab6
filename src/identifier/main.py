"""Main entry point for the identifier command line tool."""

import argparse
import logging
import sys
from collections.abc import Callable
from pathlib import Path

from fastmcp import FastMCP

from identifier import __version__, commands
from identifier.config import Config, parse_log_level
from identifier.errors import ConfigError, IdentifierError
from identifier.indexer import IndexRecordStore
from identifier.tools import register_tools

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# "<command> <subcommand>" pairs parsed as one command name
NESTED_COMMANDS = {
    "index": ("list", "folders", "mime", "pronom"),
    "ai": ("list", "ro-crate"),
}


def create_server(store: IndexRecordStore) -> FastMCP:
    """Create the MCP server exposing the read tools over an index store.

    Args:
        store: Index store, opened read-only.
    """
    mcp = FastMCP(
        name="identifier",
        instructions=(
            "identifier provides access to the technical metadata of an indexed "
            "archive: files with mimetype, PRONOM id and checksum, folder and format "
            "statistics, and AI generated folder descriptions."
        ),
    )
    logger.info("Registering read tools...")
    register_tools(mcp, store)
    logger.info("Server configured successfully")
    return mcp


def cmd_serve(args: argparse.Namespace, config: Config) -> int:
    """Serve the index store over MCP until interrupted."""
    with commands.open_store(args.database, read_only=True) as store:
        mcp = create_server(store)
        if args.transport == "stdio":
            mcp.run(transport="stdio")
        else:
            logger.info("Starting MCP server on %s:%s...", args.host, args.port)
            mcp.run(transport=args.transport, host=args.host, port=args.port)
    return 0


def setup_logging(config: Config) -> None:
    """Configure the root logger from the effective configuration."""
    kwargs = {}
    if config.log.file is not None:
        kwargs["filename"] = str(config.log.file)
    try:
        logging.basicConfig(level=config.log_level, format=LOG_FORMAT, **kwargs)
    except OSError as e:
        raise ConfigError(f"cannot open log file {config.log.file}: {e}") from e


def merge_commands(argv: list[str]) -> list[str]:
    """Join a command and its subcommand into one token ("index list")."""
    argv = list(argv)
    for i, token in enumerate(argv[:-1]):
        if token in NESTED_COMMANDS:
            if argv[i + 1] in NESTED_COMMANDS[token]:
                argv[i : i + 2] = [f"{token} {argv[i + 1]}"]
            break
    return argv


def _add_database(parser: argparse.ArgumentParser, required: bool = True) -> None:
    parser.add_argument(
        "--database",
        type=Path,
        required=required,
        help="Folder of the index store (created if missing)",
    )


def _add_prefix(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--prefix", default="", help="Only entries whose path starts with this prefix")


def _add_output(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("output")
    group.add_argument("--csv", type=Path, help="Write results to a CSV file")
    group.add_argument("--jsonl", type=Path, help="Write results to a JSON lines file")
    group.add_argument("--xlsx", type=Path, help="Write results to an Excel file")
    group.add_argument(
        "--console",
        action="store_true",
        help="Write results to the console (default when no file is given)",
    )


def _add_filters(parser: argparse.ArgumentParser, remove: bool = True) -> None:
    group = parser.add_argument_group("filters")
    group.add_argument("--empty", action="store_true", help="Include empty files")
    group.add_argument("--duplicates", action="store_true", help="Include duplicate files")
    group.add_argument("--regexp", help="Include files whose basename matches the regular expression")
    if remove:
        group.add_argument(
            "--remove",
            action="store_true",
            help="Remove the included files and their records (needs a filter)",
        )


def _command(
    subparsers: argparse._SubParsersAction,
    name: str,
    handler: Callable[[argparse.Namespace, Config], int],
    help_text: str,
) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(name, help=help_text, description=help_text)
    parser.set_defaults(handler=handler)
    return parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="identifier",
        description="identifier - technical and descriptive metadata for digital archives",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="TOML configuration file (replaces the default)")
    parser.add_argument("--log-file", type=Path, help="Write the log to this file")
    parser.add_argument("--log-level", help="CRITICAL, ERROR, WARNING, NOTICE, INFO or DEBUG")
    parser.add_argument("--show-config", action="store_true", help="Print the effective configuration")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = _command(subparsers, "index", commands.cmd_index, "Index all files below PATH")
    p.add_argument("path", help="Data folder")
    _add_database(p, required=False)
    p.add_argument("-n", "--concurrent", type=int, help="Number of concurrent workers")
    p.add_argument("--actions", help="Comma separated identification actions (siegfried, xml, image, audio)")
    _add_prefix(p)
    _add_filters(p)
    _add_output(p)

    p = _command(subparsers, "index list", commands.cmd_index_list, "List indexed files")
    p.add_argument("path", nargs="?", help="Data folder (required for --remove)")
    _add_database(p)
    _add_prefix(p)
    _add_filters(p)
    _add_output(p)

    p = _command(subparsers, "index folders", commands.cmd_index_folders, "Show folder statistics")
    _add_database(p)
    _add_prefix(p)
    _add_output(p)

    for name, handler, what in (
        ("index mime", commands.cmd_index_mime, "mimetype"),
        ("index pronom", commands.cmd_index_pronom, "PRONOM id"),
    ):
        p = _command(subparsers, name, handler, f"Show file counts and sizes per {what}")
        _add_database(p)
        _add_prefix(p)
        _add_filters(p, remove=False)
        _add_output(p)

    p = _command(subparsers, "clearpath", commands.cmd_clearpath, "Sanitize file and folder names")
    p.add_argument("path", help="Data folder")
    p.add_argument("--auto", action="store_true", help="Replace problematic characters")
    p.add_argument("--regexp", help="Regular expression whose matches (or groups) are replaced")
    p.add_argument("--replace", help="Replacement for --regexp matches")
    p.add_argument("--rename", action="store_true", help="Rename (default is a dry run)")

    for name, handler, what in (
        ("files", commands.cmd_files, "files"),
        ("folders", commands.cmd_folders, "folders"),
    ):
        p = _command(subparsers, name, handler, f"Find {what} whose name matches a regular expression")
        p.add_argument("path", help="Data folder")
        p.add_argument("--regexp", required=True, help="Regular expression matched against the name")
        p.add_argument("--remove", action="store_true", help=f"Remove the matching {what}")

    p = _command(subparsers, "ai", commands.cmd_ai, "Create AI descriptions of the indexed folders")
    _add_database(p)
    _add_prefix(p)
    p.add_argument("--model", help="<driver>-<model>, e.g. google-gemini-2.0-pro-exp-02-05")
    p.add_argument("--apikey", help="API key, %%%%NAME%%%% reads environment variable NAME")
    p.add_argument("--query", help="Prompt text or file")
    p.add_argument("--additional-query", help="Text or file prepended to the prompt")
    _add_output(p)

    p = _command(subparsers, "ai list", commands.cmd_ai_list, "List stored AI descriptions")
    _add_database(p)
    _add_prefix(p)
    p.add_argument("--model", help="Only descriptions of this model")
    _add_output(p)

    p = _command(
        subparsers, "ai ro-crate", commands.cmd_ai_rocrate, "Write AI descriptions into the RO-Crate of PATH"
    )
    p.add_argument("path", help="Data folder")
    _add_database(p)
    _add_prefix(p)
    p.add_argument("--model", help="Model whose descriptions are used")
    p.add_argument("--replace", action="store_true", help="Replace existing elements")

    p = _command(subparsers, "serve", cmd_serve, "Serve the index store over MCP")
    _add_database(p)
    p.add_argument("--transport", choices=["stdio", "sse", "http"], default="sse")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8080)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main function - parses the command line and runs the command."""
    parser = build_parser()
    args = parser.parse_args(merge_commands(sys.argv[1:] if argv is None else argv))

    try:
        config = Config.load(args.config)
        if args.log_level:
            parse_log_level(args.log_level)
            config.log.level = args.log_level
        if args.log_file:
            config.log.file = args.log_file.expanduser()
        setup_logging(config)
    except ConfigError as e:
        logger.error("%s", e)
        return 1

    if args.show_config:
        print(config.to_toml(), end="")
    if args.command is None:
        if not args.show_config:
            parser.print_help()
        return 0

    logger.debug("running '%s' with configuration from %s", args.command, config.source)
    try:
        return args.handler(args, config)
    except IdentifierError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
