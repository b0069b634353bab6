"""Command implementations for the identifier CLI.

Every command takes the parsed arguments and the effective configuration and
returns the process exit code. Setup problems are raised as IdentifierError
subclasses and reported by main().
"""

import argparse
import logging
import os
import re
import shutil
import time
from pathlib import Path

from rich.console import Console

from identifier.ai import create_driver, describe_folders, load_query
from identifier.config import Config
from identifier.errors import ConfigError
from identifier.indexer import (
    IdentificationEngine,
    IndexingWorkerPool,
    IndexRecord,
    IndexRecordStore,
    ReportQuery,
    build_folder_tree,
    build_path,
    folder_statistics,
    format_statistics,
    walk_files,
)
from identifier.indexer.engine import ACTIONS, normalize_actions
from identifier.indexer.models import AIDescriptor
from identifier.indexer.walker import full_path, require_directory
from identifier.output import (
    AI_FIELDS,
    FOLDER_FIELDS,
    INDEX_FIELDS,
    Output,
    ai_row,
    folder_data,
    folder_row,
    format_fields,
    human_size,
    index_row,
)
from identifier.rocrate import METADATA_FILE, RoCrate, merge_descriptors

logger = logging.getLogger(__name__)


def _console() -> Console:
    return Console(highlight=False, emoji=False, soft_wrap=True)


def compile_pattern(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ConfigError(f"cannot compile regular expression '{pattern}': {e}") from e


def compile_regexp(pattern: str | None) -> re.Pattern | None:
    """Compile an optional filter; an empty pattern means no filter."""
    if not pattern:
        return None
    return compile_pattern(pattern)


def build_query(args: argparse.Namespace) -> ReportQuery:
    """Collect the record filter options into one query.

    Raises:
        ConfigError: For an invalid regexp or --remove without a filter.
    """
    query = ReportQuery(
        empty=getattr(args, "empty", False),
        duplicates=getattr(args, "duplicates", False),
        regexp=compile_regexp(getattr(args, "regexp", None)),
        prefix=getattr(args, "prefix", "") or "",
    )
    if getattr(args, "remove", False) and query.unfiltered:
        raise ConfigError("remove flag requires at least one of empty, duplicates or regexp flag")
    return query


def open_output(
    args: argparse.Namespace, fields: list[str], sheet: str, table: bool = False, title: str = ""
) -> Output:
    return Output(
        fields,
        console=True if getattr(args, "console", False) else None,
        csv_path=getattr(args, "csv", None),
        jsonl_path=getattr(args, "jsonl", None),
        xlsx_path=getattr(args, "xlsx", None),
        sheet=sheet,
        table=table,
        title=title,
    )


def open_store(database: Path | None, read_only: bool) -> IndexRecordStore:
    if database is None:
        raise ConfigError("--database is required")
    return IndexRecordStore(full_path(database), read_only=read_only)


def report_records(
    store: IndexRecordStore,
    query: ReportQuery,
    output: Output,
    remove: bool = False,
    root: Path | None = None,
) -> int:
    """
    Write every record hit by query; with remove, delete its file and record.

    Returns:
        Number of files that could not be removed
    """
    failures = 0

    def visit(record: IndexRecord) -> bool:
        nonlocal failures
        if not query.matches(record):
            return False
        output.write(index_row(record), record.to_dict())
        if not remove or root is None:
            return False
        full = root / record.path
        try:
            os.remove(full)
        except FileNotFoundError:
            logger.warning("file '%s' is already gone, removing record", full)
            return True
        except OSError as e:
            logger.error("cannot remove file '%s': %s", full, e)
            failures += 1
            return False
        logger.info("removed file '%s'", full)
        return True

    removed = store.scan(query.prefix, visit)
    if remove:
        logger.info("removed %d records", removed)
    return failures


def cmd_index(args: argparse.Namespace, config: Config) -> int:
    """Index all files below PATH, then report the stored records."""
    root = require_directory(args.path)
    query = build_query(args)
    actions = normalize_actions(args.actions.split(",")) if args.actions else config.indexer.actions
    unknown = [a for a in actions if a not in ACTIONS]
    if unknown:
        raise ConfigError(f"unknown actions {', '.join(unknown)}, expected any of {', '.join(ACTIONS)}")
    workers = args.concurrent or config.indexer.concurrent
    if workers < 1:
        raise ConfigError(f"number of concurrent workers must be at least 1, got {workers}")

    store = open_store(args.database, read_only=False) if args.database else None
    if store is not None:
        store.initialize()
    try:
        with open_output(args, INDEX_FIELDS, "index") as output:
            for line in query.describe():
                output.comment(line)

            def write_record(record: IndexRecord) -> None:
                if query.matches(record) and record.path.startswith(query.prefix):
                    output.write(index_row(record), record.to_dict())

            engine = IdentificationEngine(config.indexer.siegfried)
            pool = IndexingWorkerPool(
                root,
                engine,
                store=store,
                actions=actions,
                checksums=config.indexer.checksums,
                workers=workers,
                start_time=int(time.time()),
                on_record=write_record if store is None else None,
            )
            logger.info("indexing '%s' with %d workers", root, workers)
            pool.run(walk_files(root))

            failures = 0
            if store is not None:
                failures = report_records(store, query, output, remove=args.remove, root=root)
            elif args.remove:
                logger.warning("--remove is ignored without --database")
    finally:
        if store is not None:
            store.close()

    return 1 if failures else 0


def cmd_index_list(args: argparse.Namespace, config: Config) -> int:
    """List (and optionally remove) stored records."""
    root = require_directory(args.path) if args.path else None
    if args.remove and root is None:
        raise ConfigError("remove flag requires path to data")
    query = build_query(args)

    with open_store(args.database, read_only=not args.remove) as store:
        with open_output(args, INDEX_FIELDS, "list") as output:
            for line in query.describe():
                output.comment(line)
            if args.remove:
                output.comment("#removing files")
            failures = report_records(store, query, output, remove=args.remove, root=root)
    return 1 if failures else 0


def cmd_index_folders(args: argparse.Namespace, config: Config) -> int:
    """Print file, folder and byte counts of every stored folder."""
    with open_store(args.database, read_only=True) as store:
        tree = build_folder_tree(store, args.prefix or "")
    with open_output(args, FOLDER_FIELDS, "folders", table=True, title="Folder statistics") as output:
        for stats in folder_statistics(tree):
            output.write(folder_row(stats), folder_data(stats))
    return 0


def cmd_index_formats(args: argparse.Namespace, config: Config, key: str) -> int:
    """Print counts and sizes per mimetype or PRONOM id."""
    query = build_query(args)
    title = "Mime statistics" if key == "mimetype" else "Pronom statistics"
    with open_store(args.database, read_only=True) as store:
        with open_output(args, format_fields(key), key, table=True, title=title) as output:
            for line in query.describe():
                output.comment(line)
            for value, count, size in format_statistics(store, query, key):
                output.write(
                    [value, count, size, human_size(size)],
                    {key: value, "count": count, "size": size},
                )
    return 0


def cmd_index_mime(args: argparse.Namespace, config: Config) -> int:
    return cmd_index_formats(args, config, "mimetype")


def cmd_index_pronom(args: argparse.Namespace, config: Config) -> int:
    return cmd_index_formats(args, config, "pronom")


def cmd_clearpath(args: argparse.Namespace, config: Config) -> int:
    """Show (and with --rename apply) sanitized file and folder names."""
    if not args.auto and not args.regexp:
        raise ConfigError("at least one of --auto or --regexp is required")
    if args.regexp and args.replace is None:
        raise ConfigError("--regexp requires --replace")
    regex = compile_regexp(args.regexp)
    root = require_directory(args.path)

    console = _console()
    if regex is not None:
        console.print(f'#including regexp "{args.regexp}"', markup=False)
    if not args.rename:
        logger.info("dry-run: no files will be renamed")
    logger.info("working on folder '%s'", root)

    tree = build_path(root)
    failures = 0
    for name, new_name in tree.clear_iterator(args.auto, regex, args.replace or ""):
        console.print(f"    {name}\n--> {new_name}\n", markup=False)
        if not args.rename:
            continue
        source, target = root / name, root / new_name
        if os.path.lexists(target):
            logger.error("cannot rename '%s' to '%s': target exists", source, target)
            failures += 1
            continue
        logger.info("renaming '%s' to '%s'", source, target)
        try:
            os.rename(source, target)
        except OSError as e:
            logger.error("cannot rename '%s' to '%s': %s", source, target, e)
            failures += 1
    return 1 if failures else 0


def cmd_files(args: argparse.Namespace, config: Config) -> int:
    """List (and with --remove delete) files whose name matches a regexp."""
    regex = compile_pattern(args.regexp)
    root = require_directory(args.path)
    if not args.remove:
        logger.info("dry-run: no files will be removed")
    logger.info("working on folder '%s'", root)

    tree = build_path(root)
    console = _console()
    failures = 0
    for name in tree.find_basename(regex):
        console.print(name, markup=False)
        if args.remove:
            target = root / name
            logger.info("removing '%s'", target)
            try:
                os.remove(target)
            except OSError as e:
                logger.error("cannot remove '%s': %s", target, e)
                failures += 1
    return 1 if failures else 0


def cmd_folders(args: argparse.Namespace, config: Config) -> int:
    """List (and with --remove delete) folders whose name matches a regexp."""
    regex = compile_pattern(args.regexp)
    root = require_directory(args.path)
    if not args.remove:
        logger.info("dry-run: no files will be removed")
    logger.info("working on folder '%s'", root)
    logger.info('using regexp "%s"', args.regexp)

    tree = build_path(root)
    console = _console()
    failures = 0
    for name in tree.find_dirname(regex):
        console.print(name, markup=False)
        if args.remove:
            target = root / name
            logger.info("removing '%s'", target)
            try:
                shutil.rmtree(target)
            except OSError as e:
                logger.error("cannot remove '%s': %s", target, e)
                failures += 1
    return 1 if failures else 0


def cmd_ai(args: argparse.Namespace, config: Config) -> int:
    """Generate AI descriptions for the stored folders."""
    driver = create_driver(args.model or config.ai.model, args.apikey or config.ai.apikey)
    if not driver.apikey:
        raise ConfigError(f"no api key for model '{driver.key}'")
    prompt = load_query(args.query or "", args.additional_query or "")

    with open_store(args.database, read_only=False) as store:
        with open_output(args, AI_FIELDS, "ai") as output:

            def write(key: str, descriptor: AIDescriptor) -> None:
                output.write(ai_row(key, descriptor), descriptor.to_dict())

            describe_folders(
                driver,
                store,
                prompt,
                prefix=args.prefix or "",
                sample=config.ai.sample,
                batch=config.ai.batch,
                on_descriptor=write,
            )
    return 0


def cmd_ai_list(args: argparse.Namespace, config: Config) -> int:
    """List stored AI descriptions."""
    prefix = args.prefix or ""
    with open_store(args.database, read_only=True) as store:
        with open_output(args, AI_FIELDS, "list") as output:
            if prefix:
                output.comment(f'#including prefix "{prefix}"')

            def visit(key: str, descriptor: AIDescriptor) -> bool:
                output.write(ai_row(key, descriptor), descriptor.to_dict())
                return False

            store.scan_ai(args.model.lower() if args.model else None, prefix, visit)
    return 0


def cmd_ai_rocrate(args: argparse.Namespace, config: Config) -> int:
    """Merge stored AI descriptions into the RO-Crate of PATH/PREFIX."""
    root = require_directory(args.path)
    prefix = (args.prefix or "").strip("/")
    model = (args.model or config.ai.model).lower()
    crate_dir = require_directory(root / prefix) if prefix else root
    crate_path = crate_dir / METADATA_FILE

    crate = RoCrate.load(crate_path)
    descriptors: list[AIDescriptor] = []
    with open_store(args.database, read_only=True) as store:

        def collect(key: str, descriptor: AIDescriptor) -> bool:
            descriptors.append(descriptor)
            return False

        store.scan_ai(model, prefix, collect)
    if not descriptors:
        logger.warning("no AI descriptions of model '%s' below '%s'", model, prefix)

    merged = merge_descriptors(crate, descriptors, base=prefix, replace=args.replace)
    crate.save(crate_path)
    _console().print(f"{merged} folders written to {crate_path}", markup=False)
    return 0

