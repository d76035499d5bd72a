"""Command line entry point for the ``blessnet-llm`` console script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Sequence, TextIO, get_args, get_origin, get_type_hints
from urllib.parse import SplitResult

from .driver import LlmDriver
from .errors import LlmError
from .models import MODEL_CATALOG, CatalogModel, model_file_path, parse_model
from .providers.base import ProviderError
from .providers.download import ModelDownloader
from .session import SessionOptions
from .settings import DriverSettings, SettingsStore
from .utils import logging as logging_utils

__all__ = ["main", "configure_logging"]

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_EXIT_COMMANDS = {"/exit", "/quit"}

EXIT_OK = 0
EXIT_DRIVER_ERROR = 1
EXIT_USAGE = 2


def configure_logging(settings: DriverSettings, *, debug: bool = False) -> Path:
    return logging_utils.setup_logging(settings, debug=debug)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``blessnet-llm`` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_usage(sys.stderr)
        return EXIT_USAGE

    try:
        overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        return EXIT_USAGE

    settings_path = args.settings_path or os.environ.get("BLESSNET_LLM_SETTINGS_PATH")
    store = SettingsStore(Path(settings_path).expanduser() if settings_path else None)
    settings = store.load(overrides=overrides or None)
    log_path = configure_logging(settings, debug=args.debug)
    _LOGGER.debug("Settings loaded from %s; logging to %s", store.path, log_path)

    if args.command == "catalog":
        return _print_catalog(sys.stdout)
    if args.command == "settings":
        _dump_settings(settings, store, overrides=overrides)
        return EXIT_OK
    if args.command == "download":
        return asyncio.run(_run_download(args.model, settings))
    return asyncio.run(_run_chat(args, settings))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blessnet-llm",
        description="Run local llamafile models through the blessnet LLM driver.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.blessnet/llm_driver.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override a driver setting for this run (repeatable).",
    )
    commands = parser.add_subparsers(dest="command")

    chat = commands.add_parser("chat", help="Chat with a model.")
    chat.add_argument("model", help="Catalog name (optionally with quantization) or model URL.")
    chat.add_argument("--system", metavar="TEXT", help="System message for the session.")
    chat.add_argument(
        "--tool-endpoint",
        dest="tool_endpoints",
        metavar="URL",
        action="append",
        default=[],
        help="MCP SSE endpoint to load tools from (repeatable).",
    )
    chat.add_argument("--temperature", type=float)
    chat.add_argument("--top-p", dest="top_p", type=float)
    chat.add_argument("--prompt", metavar="TEXT", help="Send one prompt and exit instead of reading stdin.")

    download = commands.add_parser("download", help="Download a model into the local cache.")
    download.add_argument("model", help="Catalog name (optionally with quantization) or model URL.")

    commands.add_parser("catalog", help="List the known models.")
    commands.add_parser("settings", help="Print the effective driver settings.")
    return parser


def _build_driver(settings: DriverSettings) -> LlmDriver:
    return LlmDriver(settings=settings)


def _allow_cli_urls(url: SplitResult) -> bool:
    # Whoever runs the CLI chose the URL themselves.
    _LOGGER.debug("Allowing command line model URL %s", url.geturl())
    return True


async def _run_chat(args: argparse.Namespace, settings: DriverSettings) -> int:
    driver = _build_driver(settings)
    options = SessionOptions(
        system_message=args.system,
        tool_endpoints=list(args.tool_endpoints) or None,
        temperature=args.temperature,
        top_p=args.top_p,
    )
    try:
        handle = await driver.set_model(args.model, _allow_cli_urls)
        try:
            await driver.set_options(handle, options)
            if args.prompt is not None:
                await driver.prompt(handle, args.prompt)
                print(await driver.read_response(handle))
            else:
                await _interactive_loop(driver, handle, sys.stdin, sys.stdout)
        finally:
            await driver.close(handle)
    except LlmError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_DRIVER_ERROR
    return EXIT_OK


async def _interactive_loop(driver: LlmDriver, handle: int, source: TextIO, sink: TextIO) -> None:
    while True:
        sink.write("> ")
        sink.flush()
        line = await asyncio.to_thread(source.readline)
        if not line:
            break
        text = line.strip()
        if not text:
            continue
        if text in _EXIT_COMMANDS:
            break
        await driver.prompt(handle, text)
        reply = await driver.read_response(handle)
        sink.write(f"{reply}\n")
        sink.flush()


async def _run_download(model: str, settings: DriverSettings) -> int:
    try:
        variant = parse_model(
            model,
            allowed_hosts=settings.allowed_model_hosts,
            allowed_extensions=settings.allowed_model_extensions,
        )
    except LlmError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_DRIVER_ERROR

    destination = model_file_path(variant, settings.models_dir)
    if destination.exists():
        print(destination)
        return EXIT_OK
    downloader = ModelDownloader(chunk_size=settings.download_chunk_size, timeout=settings.download_timeout)
    try:
        await downloader.download(variant.download_url, destination)
    except ProviderError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_DRIVER_ERROR
    print(destination)
    return EXIT_OK


def _print_catalog(stream: TextIO) -> int:
    for name in sorted(MODEL_CATALOG):
        variant = CatalogModel(MODEL_CATALOG[name])
        stream.write(f"{name}\t{variant.file_name}\n")
    return EXIT_OK


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = DriverSettings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(DriverSettings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        overrides[key] = _coerce_value(type_hints.get(key, fields[key].type), raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = get_origin(annotation) or annotation
    if target is bool:
        return _parse_bool(raw_value)
    if target is int:
        return int(raw_value, 10)
    if target is float:
        return float(raw_value)
    if target is Path:
        return Path(raw_value).expanduser()
    if target is tuple:
        item_types = [arg for arg in get_args(annotation) if arg is not Ellipsis]
        if item_types and item_types[0] is not str:
            raise ValueError("Only string tuples can be overridden")
        return tuple(item.strip() for item in raw_value.split(",") if item.strip())
    return raw_value


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: DriverSettings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["models_dir"] = str(settings.models_dir)
    payload["log_dir"] = str(settings.log_dir)
    log_path = logging_utils.get_log_path()
    metadata = {
        "path": str(store.path),
        "log_path": str(log_path) if log_path is not None else None,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": sorted(name for name in os.environ if name.startswith("BLESSNET_")),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
