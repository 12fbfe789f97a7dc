#!/usr/bin/python3
import argparse
import json
import logging
import math
import os
import sys
import tempfile
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path

import qdrls


def _json_default(obj):
    # AMQP values that json can't encode natively (uuid, timestamp, binary, described types).
    if isinstance(obj, (bytes, bytearray)):
        return qdrls.stringify(obj)
    return str(obj)


def _parse_timeout(value: str) -> float:
    raw = (value or "").strip()
    if not raw:
        raise argparse.ArgumentTypeError("empty timeout")
    try:
        timeout = float(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid timeout: {value!r}")
    if not math.isfinite(timeout) or timeout <= 0:
        raise argparse.ArgumentTypeError("timeout must be a finite number of seconds > 0")
    return timeout


def _cli_version() -> str:
    # Prefer the installed distribution version, but fall back to the helper's `_VERSION`
    # when running directly from a checkout.
    try:
        return pkg_version("qdrls")
    except PackageNotFoundError:
        v = getattr(qdrls, "_VERSION", None)
        return str(v) if v is not None else "unknown"


def _emit(path: Path | None, text: str) -> None:
    """
    Write `text` to stdout, or to `path` via a temp file in the same directory that replaces
    the destination only once fully written.
    """
    if path is None:
        sys.stdout.write(text)
        return
    tmp_fh = tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        newline="\n",
        delete=False,
        dir=path.parent,
        prefix=f".{path.name}.",
    )
    tmp_path = Path(tmp_fh.name)
    try:
        with tmp_fh:
            tmp_fh.write(text)
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def _write_json(path: Path | None, payload) -> None:
    _emit(path, json.dumps(payload, indent=2, default=_json_default) + "\n")


def _write_lines(path: Path | None, lines: list[str]) -> None:
    _emit(path, "".join(f"{line}\n" for line in lines))


def _log_level(args) -> str:
    if args.log_level:
        return args.log_level
    if args.verbose >= 2:
        return "DEBUG"
    if args.verbose == 1:
        return "INFO"
    return "WARNING"


def build_parser(config: "qdrls.Config | None" = None) -> argparse.ArgumentParser:
    config = config or qdrls.Config()
    p = argparse.ArgumentParser(
        prog="qdrls",
        description="List router management entities (links, addresses, ...) as a table.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {_cli_version()}")
    p.add_argument(
        "--url",
        default=config.url,
        help=f"URL to connect to (default: env QDRLS_URL or {qdrls.DEFAULT_URL})",
    )
    p.add_argument(
        "--type",
        dest="entity_type",
        default=qdrls.DEFAULT_ENTITY_TYPE,
        help="Type of the entities to list: short name (link, address) or qualified name",
    )
    p.add_argument(
        "--attributes",
        default="",
        help="Comma separated list of attributes to display (names or aliases)",
    )
    p.add_argument(
        "--username",
        default=config.username,
        help="User to connect as (default: env QDRLS_USERNAME)",
    )
    p.add_argument(
        "--password",
        default=config.password,
        help="Password to connect with (default: env QDRLS_PASSWORD)",
    )
    p.add_argument(
        "--timeout",
        type=_parse_timeout,
        default=None,
        help="Seconds to wait on connect/send/receive (default: wait indefinitely)",
    )
    p.add_argument(
        "--format",
        choices=["table", "json"],
        default="table",
        help="Output format (default: table)",
    )
    p.add_argument(
        "--divider",
        action="store_true",
        help="Underline the table header with '=' runs",
    )
    p.add_argument("--out", default="", help="Output path (default: stdout)")
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (repeatable; maps to INFO/DEBUG)",
    )
    p.add_argument(
        "--log-level",
        default="",
        help="Set log level (DEBUG/INFO/WARNING/ERROR/CRITICAL). Overrides -v/--verbose.",
    )
    return p


def main(argv: list[str] | None = None) -> int:
    config = qdrls.load_config()
    args = build_parser(config).parse_args(argv)

    try:
        qdrls.configure_logging(_log_level(args))
    except ValueError as e:
        sys.stderr.write(f"invalid --log-level: {e}\n")
        return 2

    entity = qdrls.resolve_entity(args.entity_type)
    selection = qdrls.build_attribute_selection(args.attributes, entity)
    request = qdrls.build_request(entity, selection)
    logging.debug(f"resolved type {args.entity_type!r} -> {entity.qualified_name}")

    try:
        with qdrls.ManagementClient(
            args.url,
            username=args.username,
            password=args.password,
            timeout=args.timeout,
        ) as client:
            response = client.query(request)
    except qdrls.TransportError as e:
        logging.error(str(e))
        return 1

    out_path = None if (not args.out or args.out == "-") else Path(args.out)
    try:
        result = qdrls.interpret_message(response)
    except qdrls.RequestFailed as e:
        _write_lines(out_path, [f"ERROR: {e.status_description}"])
        return 0
    except qdrls.MalformedResponse as e:
        logging.debug(e.reason)
        _write_lines(out_path, [f"Bad response: {e.raw_payload}"])
        return 0

    if args.format == "json":
        _write_json(out_path, {"attributeNames": result.header, "results": result.rows})
    else:
        lines = qdrls.render_lines(result, selection, divider=args.divider)
        _write_lines(out_path, qdrls.align(lines))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
