import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from slotkeeper.listeners import ListenerFactory, UvicornListenerHost
from slotkeeper.placeholders import clean_placeholders, generate_placeholders, generate_slot_placeholder
from slotkeeper.reconciler import ChangeWatcher, Reconciler
from slotkeeper.sitedetect import detect_site
from slotkeeper.store import (
    SLOT_STATUSES,
    SLOT_TYPES,
    LockTimeoutError,
    SlotConfigError,
    initialize_config,
    reset_slot,
    set_slot,
    utc_now_iso,
)

EXIT_ENV = 1
EXIT_CONFIG = 5
EXIT_LOCK = 6
EXIT_SHUTDOWN = 7

DEFAULT_CONFIG_PATH = "/home/coder/srv/slotkeeper.json"
DEFAULT_SLOTS_CONFIG_PATH = "/home/coder/srv/admin/config/slots.json"
DEFAULT_PLACEHOLDER_DIR = "/home/coder/srv/placeholders/slots"
DEFAULT_SAMPLE_CONFIG = {
    "SlotsConfigPath": DEFAULT_SLOTS_CONFIG_PATH,
    "PlaceholderDir": DEFAULT_PLACEHOLDER_DIR,
    "LogPath": "/home/coder/data/logs/slotkeeper.log",
    "Host": "0.0.0.0",
    "PollIntervalSeconds": 1.0,
    "DebounceSeconds": 0.5,
    "ShutdownTimeoutSeconds": 5.0,
    "StatusHost": "127.0.0.1",
    "StatusPort": 0,
}


@dataclass
class Settings:
    slots_config_path: Path
    placeholder_dir: Path
    log_path: Path
    host: str
    poll_interval_seconds: float
    debounce_seconds: float
    shutdown_timeout_seconds: float
    status_host: str
    status_port: int


def _load_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8-sig") as f:
        return json.load(f)


def _write_sample_config(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(DEFAULT_SAMPLE_CONFIG, f, ensure_ascii=False, indent=2)


def _settings_from_config(cfg: dict[str, Any]) -> Settings:
    def _require_positive(value: float, name: str) -> float:
        if value <= 0:
            raise ValueError(f"{name} must be > 0 (got {value})")
        return value

    def _require_port(value: Any, name: str) -> int:
        port = int(value)
        if not 0 <= port < 65536:
            raise ValueError(f"{name} must be in 0..65535 (got {value})")
        return port

    def _get(key: str) -> Any:
        return cfg.get(key, DEFAULT_SAMPLE_CONFIG[key])

    debounce = float(_get("DebounceSeconds"))
    if debounce < 0:
        raise ValueError(f"DebounceSeconds must be >= 0 (got {debounce})")

    return Settings(
        slots_config_path=Path(_get("SlotsConfigPath")),
        placeholder_dir=Path(_get("PlaceholderDir")),
        log_path=Path(_get("LogPath")),
        host=str(_get("Host")),
        poll_interval_seconds=_require_positive(
            float(_get("PollIntervalSeconds")), "PollIntervalSeconds"
        ),
        debounce_seconds=debounce,
        shutdown_timeout_seconds=_require_positive(
            float(_get("ShutdownTimeoutSeconds")), "ShutdownTimeoutSeconds"
        ),
        status_host=str(_get("StatusHost")),
        status_port=_require_port(_get("StatusPort"), "StatusPort"),
    )


def validate_config_dict(cfg: dict[str, Any]) -> list[str]:
    try:
        _settings_from_config(cfg)
        return []
    except (TypeError, ValueError) as exc:
        return [str(exc)]


def _setup_logging(log_path: Path | None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=handlers,
        force=True,
    )


def create_runtime(settings: Settings) -> tuple[UvicornListenerHost, Reconciler]:
    host = UvicornListenerHost(
        host=settings.host, shutdown_timeout=settings.shutdown_timeout_seconds
    )
    reconciler = Reconciler(
        config_path=settings.slots_config_path,
        factory=ListenerFactory(settings.placeholder_dir),
        host=host,
    )
    return host, reconciler


async def serve(settings: Settings) -> int:
    host, reconciler = create_runtime(settings)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    exit_code = 0

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    def _on_loop_error(_loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        logging.error(
            "Unhandled error: %s",
            context.get("message"),
            exc_info=context.get("exception"),
        )
        stop_event.set()

    loop.set_exception_handler(_on_loop_error)

    logging.info("START managing slots from %s", settings.slots_config_path)
    watcher = ChangeWatcher(
        settings.slots_config_path,
        reconciler.trigger,
        poll_interval=settings.poll_interval_seconds,
        debounce=settings.debounce_seconds,
    )
    watcher_task = asyncio.create_task(watcher.run(stop_event), name="config-watcher")

    status_host = None
    status_listener = None
    if settings.status_port:
        from slotkeeper.webapp import create_app

        status_host = UvicornListenerHost(
            host=settings.status_host, shutdown_timeout=settings.shutdown_timeout_seconds
        )
        try:
            status_listener = await status_host.start(
                settings.status_port, create_app(reconciler, settings.slots_config_path)
            )
            logging.info(
                "Status API on http://%s:%s", settings.status_host, settings.status_port
            )
        except OSError as exc:
            logging.error(
                "ERROR code=%s status API port %s unavailable: %s",
                EXIT_ENV,
                settings.status_port,
                exc,
            )

    stop_waiter = asyncio.create_task(stop_event.wait())
    await asyncio.wait({watcher_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
    stop_event.set()
    try:
        await watcher_task
    except Exception:
        logging.exception("Configuration watcher crashed")
        exit_code = EXIT_ENV

    async def _close_all() -> None:
        if status_host is not None and status_listener is not None:
            await status_host.stop(status_listener)
        await reconciler.shutdown()

    logging.info("Stopping, closing %s listener(s)...", len(reconciler.managed_ports))
    try:
        await asyncio.wait_for(_close_all(), timeout=settings.shutdown_timeout_seconds + 1)
    except asyncio.TimeoutError:
        logging.error(
            "ERROR code=%s listeners did not close within %ss, exiting",
            EXIT_SHUTDOWN,
            settings.shutdown_timeout_seconds,
        )
        return EXIT_SHUTDOWN
    logging.info("STOP")
    return exit_code


def run(settings: Settings) -> int:
    return asyncio.run(serve(settings))


def _parse_bool_arg(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise argparse.ArgumentTypeError(f"expected true or false (got {value})")


def _slot_patch_from_args(args: argparse.Namespace) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    if args.status:
        patch["status"] = args.status
    if args.type:
        patch["type"] = args.type
    if args.static_root:
        patch["static_root"] = args.static_root
    if args.spa_mode is not None:
        patch["spa_mode"] = args.spa_mode
    if args.port is not None:
        patch["port"] = args.port
    if args.repository is not None:
        patch["repository"] = args.repository
    if args.branch is not None:
        patch["branch"] = args.branch
    if args.last_deploy:
        patch["last_deploy"] = utc_now_iso() if args.last_deploy == "now" else args.last_deploy
    elif args.status:
        patch["last_deploy"] = utc_now_iso()
    return patch


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Slot listener reconciler")
    sub = parser.add_subparsers(dest="command", required=True)

    serve_p = sub.add_parser("serve", help="Run the reconciler daemon")
    serve_p.add_argument(
        "--config", default=DEFAULT_CONFIG_PATH, help="Path to daemon settings JSON"
    )
    serve_p.add_argument("--slots-config", help="Override SlotsConfigPath")
    serve_p.add_argument("--placeholder-dir", help="Override PlaceholderDir")
    serve_p.add_argument("--status-port", type=int, help="Override StatusPort (0 disables)")

    def _slots_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument(
            "--slots-config",
            default=DEFAULT_SLOTS_CONFIG_PATH,
            help="Path to slots configuration JSON",
        )

    init_p = sub.add_parser("init", help="Create the default slots configuration")
    _slots_arg(init_p)

    update_p = sub.add_parser("update-slot", help="Patch one slot atomically")
    _slots_arg(update_p)
    update_p.add_argument("--slot", required=True)
    update_p.add_argument("--status", choices=SLOT_STATUSES)
    update_p.add_argument("--type", choices=SLOT_TYPES)
    update_p.add_argument("--static-root")
    update_p.add_argument("--spa-mode", type=_parse_bool_arg)
    update_p.add_argument("--port", type=int)
    update_p.add_argument("--repository")
    update_p.add_argument("--branch")
    update_p.add_argument("--last-deploy", help="ISO timestamp or 'now'")
    update_p.add_argument("--inc-deploy-count", action="store_true")

    reset_p = sub.add_parser("reset-slot", help="Restore a slot to the placeholder state")
    _slots_arg(reset_p)
    reset_p.add_argument("--slot", required=True)

    detect_p = sub.add_parser("detect-site", help="Detect how a checkout should be served")
    detect_p.add_argument("path", nargs="?", default=".")

    gen_p = sub.add_parser("generate-placeholders", help="Write placeholder assets")
    gen_p.add_argument("--placeholder-dir", default=DEFAULT_PLACEHOLDER_DIR)
    gen_p.add_argument("--slot", help="Only this slot")
    gen_p.add_argument("--port", type=int, help="Port shown for --slot")
    gen_p.add_argument("--shared-css", help="Stylesheet copied next to each page")
    gen_p.add_argument("--clean", action="store_true", help="Remove generated assets")
    return parser


def _cmd_serve(args: argparse.Namespace) -> int:
    config_path = Path(args.config)
    try:
        cfg = _load_config(config_path)
        if args.slots_config:
            cfg["SlotsConfigPath"] = args.slots_config
        if args.placeholder_dir:
            cfg["PlaceholderDir"] = args.placeholder_dir
        if args.status_port is not None:
            cfg["StatusPort"] = args.status_port
        settings = _settings_from_config(cfg)
    except FileNotFoundError:
        _write_sample_config(config_path)
        print(f"ERROR code={EXIT_ENV} config created at: {config_path}")
        print("Please edit the config and restart the service.")
        return EXIT_ENV
    except json.JSONDecodeError as exc:
        print(f"ERROR code={EXIT_CONFIG} config JSON invalid: {exc}")
        return EXIT_CONFIG
    except (KeyError, TypeError, ValueError) as exc:
        print(f"ERROR code={EXIT_CONFIG} config validation failed: {exc}")
        return EXIT_CONFIG

    _setup_logging(settings.log_path)
    if not settings.slots_config_path.exists():
        logging.warning(
            "Slots config %s does not exist yet, waiting for it", settings.slots_config_path
        )
    return run(settings)


def _cmd_update_slot(args: argparse.Namespace) -> int:
    path = Path(args.slots_config)
    if not path.exists():
        initialize_config(path)
    slot = set_slot(
        path,
        args.slot,
        _slot_patch_from_args(args),
        inc_deploy_count=args.inc_deploy_count,
    )
    print(json.dumps(slot, ensure_ascii=False, indent=2))
    return 0


def _cmd_generate(args: argparse.Namespace) -> int:
    base = Path(args.placeholder_dir)
    if args.clean:
        clean_placeholders(base)
        return 0
    shared_css = Path(args.shared_css) if args.shared_css else None
    if args.slot:
        generate_slot_placeholder(base, args.slot, args.port, shared_css)
    else:
        generate_placeholders(base, shared_css=shared_css)
    return 0


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    if args.command == "serve":
        sys.exit(_cmd_serve(args))

    _setup_logging(None)
    try:
        if args.command == "init":
            created = initialize_config(Path(args.slots_config))
            print("created" if created else "exists")
        elif args.command == "update-slot":
            sys.exit(_cmd_update_slot(args))
        elif args.command == "reset-slot":
            slot = reset_slot(Path(args.slots_config), args.slot)
            print(json.dumps(slot, ensure_ascii=False, indent=2))
        elif args.command == "detect-site":
            print(json.dumps(detect_site(Path(args.path).resolve())))
        elif args.command == "generate-placeholders":
            sys.exit(_cmd_generate(args))
    except LockTimeoutError as exc:
        print(f"ERROR code={EXIT_LOCK} {exc}")
        sys.exit(EXIT_LOCK)
    except (SlotConfigError, json.JSONDecodeError) as exc:
        print(f"ERROR code={EXIT_CONFIG} {exc}")
        sys.exit(EXIT_CONFIG)
    except OSError as exc:
        print(f"ERROR code={EXIT_ENV} {exc}")
        sys.exit(EXIT_ENV)


if __name__ == "__main__":
    main()
