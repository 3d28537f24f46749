"""Command-line interface for stronghold_sync."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Sequence, TypeVar

import argcomplete

from . import __version__, completion, config, types
from .cache import DirectoryQueryExecutor, Page, PerformanceReport, QueryCache, build_query_cache
from .daemon import DaemonRunner
from .engine import SyncEngine, SyncError, merge
from .engine.devices import SystemDeviceInfo
from .engine.local_store import JsonFileLocalStore, LocalStoreError
from .engine.network import ManualNetworkMonitor
from .engine.remote import DirectoryRemoteStore, RemoteStoreError
from .logging import configure_logging

Handler = Callable[[argparse.Namespace], int]
T = TypeVar("T")
logger = logging.getLogger(__name__)

PROG = "stronghold-sync"
SHELLS = ("bash", "zsh", "fish", "tcsh")
HANDLED_ERRORS = (
    config.ConfigError,
    LocalStoreError,
    RemoteStoreError,
    SyncError,
    merge.ConflictResolutionError,
)


def build_parser() -> argparse.ArgumentParser:
    """Create the CLI parser with all supported subcommands."""
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Offline-first document synchronization between this device and a shared store.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config-dir",
        help="Override the configuration directory (defaults to ~/.config/stronghold_sync).",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity (can be repeated).")
    parser.add_argument("-q", "--quiet", action="count", default=0, help="Decrease logging verbosity (can be repeated).")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    init_parser = subparsers.add_parser("init", help="Write settings.toml for this device.")
    init_parser.add_argument("--owner", help="Owner id whose documents this device syncs.")
    init_parser.add_argument("--remote-dir", help="Shared directory acting as the remote store.")
    init_parser.add_argument("--interval", type=float, help="Seconds between scheduled full syncs.")
    init_parser.add_argument("--display-name", help="Name this device registers under.")
    init_parser.add_argument("--force", action="store_true", help="Overwrite existing settings without asking.")
    init_parser.set_defaults(func=_handle_init)

    documents_parser = subparsers.add_parser("documents", help="List documents in the local cache.")
    documents_parser.add_argument("--all-owners", action="store_true", help="Include documents of other owners.")
    documents_parser.set_defaults(func=_handle_documents)

    edit_parser = subparsers.add_parser("edit", help="Create or change a local document.")
    edit_id_arg = edit_parser.add_argument("document_id", help="Document to create or change.")
    edit_id_arg.completer = completion.document_completer
    edit_parser.add_argument("--title", help="New title.")
    edit_parser.add_argument("--kind", choices=[kind.value for kind in types.DocumentKind], help="Document kind.")
    content_group = edit_parser.add_mutually_exclusive_group()
    content_group.add_argument("--content", help="New content.")
    content_group.add_argument("--file", help="Read the new content from this file.")
    content_group.add_argument("--delete", action="store_true", help="Mark the document deleted.")
    edit_parser.set_defaults(func=_handle_edit)

    sync_parser = subparsers.add_parser("sync", help="Sync one document, or every local document.")
    sync_id_arg = sync_parser.add_argument("document_id", nargs="?", help="Document to sync; defaults to all.")
    sync_id_arg.completer = completion.document_completer
    sync_parser.set_defaults(func=_handle_sync)

    status_parser = subparsers.add_parser("status", help="Show online state, pending changes and conflicts.")
    status_parser.set_defaults(func=_handle_status)

    conflicts_parser = subparsers.add_parser("conflicts", help="List open conflicts.")
    conflicts_parser.add_argument("--show-content", action="store_true", help="Print both sides of each conflict.")
    conflicts_parser.set_defaults(func=_handle_conflicts)

    resolve_parser = subparsers.add_parser("resolve", help="Resolve an open conflict.")
    resolve_id_arg = resolve_parser.add_argument("document_id", help="Conflicted document.")
    resolve_id_arg.completer = completion.conflict_completer
    resolve_parser.add_argument(
        "resolution",
        choices=[resolution.value for resolution in types.ConflictResolution],
        help="Which side wins, a line merge, or manual content.",
    )
    resolve_parser.add_argument("--file", help="Resolved content for the manual resolution.")
    resolve_parser.set_defaults(func=_handle_resolve)

    browse_parser = subparsers.add_parser("browse", help="Page through this owner's documents in the remote store.")
    browse_parser.add_argument("--kind", choices=[kind.value for kind in types.DocumentKind], help="Only this kind.")
    browse_parser.add_argument("--page-size", type=_positive_int, default=20, help="Documents per page (default 20).")
    browse_parser.add_argument("--cursor", type=float, help="Continue with documents updated before this timestamp.")
    browse_parser.add_argument("--report", action="store_true", help="Print the query performance report.")
    browse_parser.set_defaults(func=_handle_browse)

    offline_parser = subparsers.add_parser("offline", help="Cache reference data for offline editing.")
    offline_parser.set_defaults(func=_handle_offline)

    daemon_parser = subparsers.add_parser("daemon", help="Run scheduled syncs in the foreground.")
    daemon_parser.add_argument("action", choices=("start",), help="Daemon action to perform.")
    daemon_parser.add_argument("--once", action="store_true", help="Run one full sync then exit.")
    daemon_parser.set_defaults(func=_handle_daemon)

    completion_parser = subparsers.add_parser("completion", help="Install or show tab completion setup instructions.")
    completion_parser.add_argument("--install", action="store_true", help="Install completion for the current shell.")
    completion_parser.add_argument("--shell", choices=SHELLS, help="Target shell (auto-detected if not specified).")
    completion_parser.set_defaults(func=_handle_completion)

    return parser


def build_engine(
    settings: config.Settings,
    base: Path,
    *,
    network: Optional[ManualNetworkMonitor] = None,
) -> SyncEngine:
    """Wire an engine to the on-disk store under ``base`` and the configured remote directory."""
    return SyncEngine(
        JsonFileLocalStore(base / "store"),
        DirectoryRemoteStore(settings.remote_path(base)),
        network=network or ManualNetworkMonitor(online=True),
        device_info=SystemDeviceInfo(
            user_agent=settings.device.user_agent,
            display_name=settings.device.display_name,
        ),
        sync_interval=settings.sync.interval_seconds,
    )


def _handle_init(args: argparse.Namespace) -> int:
    wizard = InitWizard(config_dir=args.config_dir)
    try:
        path = wizard.run(
            owner_id=args.owner,
            remote_dir=args.remote_dir,
            interval=args.interval,
            display_name=args.display_name,
            force=args.force,
        )
    except config.ConfigError as exc:
        logger.error("%s", exc)
        return 1
    logger.info("Settings written to %s.", path)
    return 0


def _handle_documents(args: argparse.Namespace) -> int:
    try:
        settings, base = _load(args)
        owner_id = None if args.all_owners else settings.require_owner()
        engine = build_engine(settings, base)
        documents = engine.list_documents(owner_id)
        conflicted = {conflict.document_id for conflict in engine.list_conflicts()}
    except HANDLED_ERRORS as exc:
        logger.error("%s", exc)
        return 1
    if not documents:
        print("No documents in the local cache.")
        return 0
    rows = [
        [doc.id, doc.kind.value, doc.title or "-", str(doc.version), _document_state(doc, conflicted)]
        for doc in documents
    ]
    _print_table(["Id", "Kind", "Title", "Version", "State"], rows)
    return 0


def _handle_edit(args: argparse.Namespace) -> int:
    try:
        settings, base = _load(args)
        owner_id = settings.require_owner()
        engine = build_engine(settings, base)
        if args.delete:
            document = engine.delete_document(args.document_id, owner_id)
        else:
            content = args.content
            if args.file:
                content = _read_text(args.file)
            document = engine.edit_document(
                args.document_id,
                owner_id,
                content=content,
                title=args.title,
                kind=args.kind,
            )
    except HANDLED_ERRORS as exc:
        logger.error("%s", exc)
        return 1
    logger.info("Saved %s locally (%s).", document.id, "deleted" if document.is_deleted else "pending sync")
    return 0


def _handle_sync(args: argparse.Namespace) -> int:
    async def action(engine: SyncEngine, owner_id: str) -> int:
        if args.document_id:
            outcome = await engine.sync_document(args.document_id, owner_id)
            print(f"{args.document_id}: {outcome.value}")
            return 0
        summary = await engine.perform_full_sync(owner_id)
        print(
            f"{summary.documents_count} document(s): {summary.synced} synced, "
            f"{summary.conflicted} conflicted, {summary.failed} failed."
        )
        return 1 if summary.failed else 0

    return _run_with_engine(args, action)


def _handle_status(args: argparse.Namespace) -> int:
    try:
        settings, base = _load(args)
        status = build_engine(settings, base).get_sync_status(settings.sync.owner_id)
    except HANDLED_ERRORS as exc:
        logger.error("%s", exc)
        return 1
    last_sync = _format_timestamp(status.last_sync_time) if status.last_sync_time else "never"
    _print_table(
        ["Online", "Last Sync", "Pending", "Modified", "Conflicts"],
        [
            [
                "yes" if status.is_online else "no",
                last_sync,
                str(status.pending_changes),
                str(status.modified_changes),
                str(len(status.conflicts)),
            ]
        ],
    )
    return 0


def _handle_browse(args: argparse.Namespace) -> int:
    async def read_page(cache: QueryCache, owner_id: str) -> Page:
        return await cache.paginated_read(
            "documents",
            page_size=args.page_size,
            cursor=args.cursor,
            order_by="updated_at",
            filters={"owner_id": owner_id, "kind": args.kind},
        )

    try:
        settings, base = _load(args)
        owner_id = settings.require_owner()
        cache = build_query_cache(
            settings.cache,
            executor=DirectoryQueryExecutor(DirectoryRemoteStore(settings.remote_path(base))),
            diagnostics_dir=base / "diagnostics",
        )
        page = _run(read_page(cache, owner_id))
    except HANDLED_ERRORS as exc:
        logger.error("%s", exc)
        return 1
    if not page.rows:
        print("No documents in the remote store.")
    else:
        rows = [
            [
                str(row.get("id")),
                str(row.get("kind") or "-"),
                str(row.get("title") or "-"),
                str(row.get("version")),
                _format_timestamp(row["updated_at"]) if row.get("updated_at") else "-",
            ]
            for row in page.rows
        ]
        _print_table(["Id", "Kind", "Title", "Version", "Updated"], rows)
        if page.has_more:
            print(f"More documents follow; continue with --cursor {page.next_cursor!r}.")
    if args.report:
        _print_report(cache.get_performance_report())
    return 0


def _handle_conflicts(args: argparse.Namespace) -> int:
    try:
        settings, base = _load(args)
        conflicts = build_engine(settings, base).list_conflicts()
    except HANDLED_ERRORS as exc:
        logger.error("%s", exc)
        return 1
    if not conflicts:
        print("No open conflicts.")
        return 0
    for conflict in conflicts:
        print(
            f"{conflict.document_id}: {conflict.conflict_kind.value} conflict "
            f"(local v{conflict.local.version}, remote v{conflict.remote.version}) "
            f"detected {_format_timestamp(conflict.detected_at)}"
        )
        if args.show_content:
            print("  local:")
            print(_indent(conflict.local.content))
            print("  remote:")
            print(_indent(conflict.remote.content))
    return 0


def _handle_resolve(args: argparse.Namespace) -> int:
    async def action(engine: SyncEngine, owner_id: str) -> int:
        content = _read_text(args.file) if args.file else None
        document = await engine.resolve_conflict(args.document_id, args.resolution, content=content)
        print(f"{document.id}: resolved with {args.resolution} at version {document.version}")
        return 0

    return _run_with_engine(args, action)


def _handle_offline(args: argparse.Namespace) -> int:
    async def action(engine: SyncEngine, owner_id: str) -> int:
        payload = await engine.enable_offline_mode()
        print(
            f"Cached {len(payload['templates'])} template(s) and "
            f"{len(payload['validation_rules'])} validation rule set(s)."
        )
        return 0

    return _run_with_engine(args, action)


def _handle_daemon(args: argparse.Namespace) -> int:
    if args.action != "start":
        logger.error("Unsupported daemon action '%s'.", args.action)
        return 1
    runner = DaemonRunner(config_dir=args.config_dir)
    try:
        summary = runner.run_forever(run_once=args.once)
    except HANDLED_ERRORS as exc:
        logger.error("%s", exc)
        return 1
    if summary is not None and summary.failed:
        return 1
    return 0


def _handle_completion(args: argparse.Namespace) -> int:
    """Install shell completion, or print how to."""
    shell = args.shell or _detect_shell()
    if not shell:
        print("Could not auto-detect shell. Please specify with --shell")
        return 1
    if args.install:
        try:
            return _install_completion(shell)
        except OSError as exc:
            logger.error("Failed to install completion: %s", exc)
            return 1

    print(f"To enable tab completion for {shell}:")
    print()
    if shell == "fish":
        print("  register-python-argcomplete --shell fish stronghold-sync > ~/.config/fish/completions/stronghold-sync.fish")
    elif shell == "tcsh":
        print("Add to ~/.tcshrc:")
        print("  eval `register-python-argcomplete --shell tcsh stronghold-sync`")
    else:
        print(f"Add to ~/.{shell}rc:")
        for line in _rc_snippet(shell).splitlines():
            print(f"  {line}")
    print()
    print("Or run: stronghold-sync completion --install")
    return 0


def _detect_shell() -> Optional[str]:
    shell_env = Path(os.environ.get("SHELL", "")).name
    if shell_env in SHELLS:
        return shell_env
    if os.environ.get("BASH_VERSION"):
        return "bash"
    if os.environ.get("ZSH_VERSION"):
        return "zsh"
    return None


def _rc_snippet(shell: str) -> str:
    if shell == "zsh":
        return "\n".join(
            [
                "autoload -U bashcompinit",
                "bashcompinit",
                f'eval "$(register-python-argcomplete --shell zsh {PROG})"',
            ]
        )
    return f'eval "$(register-python-argcomplete {PROG})"'


def _install_completion(shell: str) -> int:
    if shell in {"bash", "zsh"}:
        snippet = _rc_snippet(shell)
        rc_file = Path.home() / f".{shell}rc"
        if rc_file.exists() and snippet in rc_file.read_text():
            print(f"Completion already installed in ~/.{shell}rc")
            return 0
        with rc_file.open("a") as handle:
            handle.write(f"\n# {PROG} completion\n{snippet}\n")
        print(f"Completion installed in ~/.{shell}rc")
        print(f"Run 'source ~/.{shell}rc' or restart your shell to activate.")
        return 0
    if shell == "fish":
        fish_file = Path.home() / ".config" / "fish" / "completions" / f"{PROG}.fish"
        result = subprocess.run(
            ["register-python-argcomplete", "--shell", "fish", PROG],
            capture_output=True,
            text=True,
        )
        if result.returncode != 0:
            print("Failed to generate fish completion script")
            return 1
        fish_file.parent.mkdir(parents=True, exist_ok=True)
        fish_file.write_text(result.stdout)
        print(f"Completion installed in {fish_file}")
        return 0
    print("tcsh completion requires manual setup.")
    print(f"  eval `register-python-argcomplete --shell tcsh {PROG}`")
    return 0


class InitWizard:
    """Settings creation; prompts for whatever was not passed on the command line."""

    def __init__(self, *, config_dir: Optional[str] = None, input_func: Callable[[str], str] | None = None):
        self._config_dir = Path(config_dir).expanduser() if config_dir else None
        self._input = input_func or input

    def run(
        self,
        *,
        owner_id: Optional[str] = None,
        remote_dir: Optional[str] = None,
        interval: Optional[float] = None,
        display_name: Optional[str] = None,
        force: bool = False,
    ) -> Path:
        base = config.ensure_config_structure(self._config_dir)
        target = config.settings_path(base)
        if target.exists() and not force:
            if not self._confirm("settings.toml already exists. Overwrite?", default=False):
                raise config.ConfigError("Refused to overwrite existing settings.")
        try:
            existing = config.load_settings(base)
        except config.ConfigError as exc:
            if not force:
                raise
            logger.warning("Replacing unreadable settings: %s", exc)
            existing = config.Settings()

        owner_id = owner_id or self._prompt("Owner id", default=existing.sync.owner_id)
        if remote_dir is None:
            remote_dir = self._prompt("Remote store directory", default=str(existing.remote_path(base)))
        if interval is not None and interval <= 0:
            raise config.ConfigError("The sync interval must be a positive number of seconds.")

        settings = config.Settings(
            sync=config.SyncBlock(
                owner_id=owner_id,
                interval_seconds=interval or existing.sync.interval_seconds,
                remote_dir=str(Path(remote_dir).expanduser().resolve()),
            ),
            cache=existing.cache,
            device=config.DeviceBlock(
                display_name=display_name or existing.device.display_name,
                user_agent=existing.device.user_agent,
            ),
        )
        return config.save_settings(settings, base)

    def _prompt(self, message: str, *, default: Optional[str] = None) -> str:
        prompt_text = message
        if default:
            prompt_text += f" [{default}]"
        prompt_text += ": "
        while True:
            response = self._input(prompt_text).strip()
            if response:
                return response
            if default:
                return default
            logger.warning("This field is required.")

    def _confirm(self, message: str, *, default: bool) -> bool:
        suffix = "Y/n" if default else "y/N"
        while True:
            response = self._input(f"{message} ({suffix}): ").strip().lower()
            if not response:
                return default
            if response in {"y", "yes"}:
                return True
            if response in {"n", "no"}:
                return False
            logger.warning("Please answer yes or no.")


def _load(args: argparse.Namespace) -> tuple[config.Settings, Path]:
    base = config.ensure_config_structure(Path(args.config_dir).expanduser() if args.config_dir else None)
    return config.load_settings(base), base


def _run_with_engine(args: argparse.Namespace, action: Callable[[SyncEngine, str], Awaitable[int]]) -> int:
    async def session() -> int:
        settings, base = _load(args)
        owner_id = settings.require_owner()
        engine = build_engine(settings, base)
        await engine.initialize(owner_id)
        try:
            return await action(engine, owner_id)
        finally:
            await engine.cleanup()

    try:
        return _run(session())
    except HANDLED_ERRORS as exc:
        logger.error("%s", exc)
        return 1


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


def _document_state(document: types.SyncableDocument, conflicted: set[str]) -> str:
    if document.id in conflicted:
        return "conflict"
    if document.is_deleted:
        return "deleted"
    if document.is_pending:
        return "new"
    if document.has_local_changes():
        return "modified"
    return "synced"


def _read_text(path: str) -> str:
    try:
        return Path(path).expanduser().read_text()
    except OSError as exc:
        raise config.ConfigError(f"Unable to read {path}: {exc}") from exc


def _indent(text: str) -> str:
    return "\n".join(f"    {line}" for line in text.splitlines()) or "    (empty)"


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return number


def _print_report(report: PerformanceReport) -> None:
    queries = report.query_stats
    print(
        f"{queries.total_queries} query(ies), average {queries.average_duration_ms:.1f}ms, "
        f"{queries.slow_queries} slow, {report.cache_stats.hit_rate:.0f}% served from cache."
    )
    for suggestion in report.suggestions:
        print(f"  [{suggestion.priority}] {suggestion.description}: {suggestion.implementation}")


def _print_table(headers: List[str], rows: List[List[str]]) -> None:
    widths = [len(header) for header in headers]
    for row in rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(cell))
    print("  ".join(header.ljust(widths[idx]) for idx, header in enumerate(headers)))
    print("  ".join("-" * width for width in widths))
    for row in rows:
        print("  ".join(row[idx].ljust(widths[idx]) for idx in range(len(headers))))


def _format_timestamp(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp).isoformat(timespec="seconds")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for console_scripts."""
    parser = build_parser()
    argcomplete.autocomplete(parser)
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(verbose=args.verbose, quiet=args.quiet)
    handler: Handler = getattr(args, "func")
    return handler(args)


if __name__ == "__main__":  # pragma: no cover - manual execution guard
    raise SystemExit(main())
