"""Command line control client and server entry point."""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from typing import Sequence

import httpx

from .version import APP_VERSION

DEFAULT_API_URL = "http://127.0.0.1:8780"

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_NOT_FOUND = 2
EXIT_TIMEOUT = 3

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the control CLI."""

    parser = argparse.ArgumentParser(
        prog="edge-nvr",
        description="Edge NVR recorder control",
    )
    parser.add_argument(
        "--url",
        default=os.environ.get("NVR_API_URL", DEFAULT_API_URL),
        help="Base URL of the recorder API (default: %(default)s).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Request timeout in seconds.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    commands = parser.add_subparsers(dest="command", required=True)

    add = commands.add_parser("add", help="Register a camera and start recording it.")
    add.add_argument("camera_id")
    add.add_argument("uri")
    add.add_argument("--disabled", action="store_true", help="Register without recording.")

    for name, help_text in (
        ("remove", "Stop recording and remove a camera."),
        ("enable", "Enable recording for a camera."),
        ("disable", "Disable recording for a camera."),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("camera_id")

    status = commands.add_parser("status", help="Show camera status.")
    status.add_argument("camera_id", nargs="?")

    commands.add_parser("gc-now", help="Run a retention pass immediately.")

    recordings = commands.add_parser("recordings", help="Summarise recorded segments.")
    recordings.add_argument("camera_id", nargs="?")

    commands.add_parser("relay-config", help="Print the live-view relay configuration.")
    commands.add_parser("viewers", help="List live-view URLs served by the relay.")

    serve = commands.add_parser("serve", help="Run the recorder service.")
    serve.add_argument("--config", help="Path to a JSON configuration file.")
    serve.add_argument("--host", help="Override the API bind address.")
    serve.add_argument("--port", type=int, help="Override the API port.")
    serve.add_argument("--log-level", default="INFO")
    return parser


def exit_code_for_status(status_code: int) -> int:
    if status_code < 400:
        return EXIT_OK
    if status_code == 404:
        return EXIT_NOT_FOUND
    if status_code == 504:
        return EXIT_TIMEOUT
    return EXIT_VALIDATION


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    detail = payload.get("detail") if isinstance(payload, dict) else None
    if isinstance(detail, list):
        # pydantic validation errors
        return "; ".join(str(item.get("msg", item)) for item in detail if isinstance(item, dict))
    return str(detail or payload)


def _format_bytes(value: object) -> str:
    if not isinstance(value, (int, float)):
        return "unknown"
    units = ("B", "KiB", "MiB", "GiB", "TiB")
    size = float(value)
    unit_index = 0
    while size >= 1024.0 and unit_index < len(units) - 1:
        size /= 1024.0
        unit_index += 1
    return f"{size:.1f} {units[unit_index]}" if unit_index else f"{int(size)} B"


def _print_camera(camera: dict[str, object]) -> None:
    health = camera.get("health") if isinstance(camera.get("health"), dict) else {}
    line = f"{camera.get('camera_id')}: {camera.get('state')} ({camera.get('uri')})"
    failures = health.get("consecutive_failures") if health else None
    if failures:
        line += f", {failures} consecutive failure(s)"
    if health and health.get("last_error"):
        line += f", last error: {health['last_error']}"
    if camera.get("viewer_url"):
        line += f", live at {camera['viewer_url']}"
    print(line)


def _print_human(command: str, payload: object) -> None:
    if command == "status":
        if isinstance(payload, dict) and "cameras" in payload:
            cameras = payload["cameras"]
        else:
            cameras = [payload]
        if not cameras:
            print("No cameras configured.")
        for camera in cameras:
            if isinstance(camera, dict):
                _print_camera(camera)
    elif command in {"add", "enable", "disable"} and isinstance(payload, dict):
        _print_camera(payload)
    elif command == "remove":
        print("Camera removed.")
    elif command == "gc-now" and isinstance(payload, dict):
        print(
            f"Deleted {payload.get('deleted_count', 0)} segment(s), "
            f"reclaimed {_format_bytes(payload.get('bytes_reclaimed'))}; "
            f"free space {_format_bytes(payload.get('free_bytes'))}"
        )
        for error in payload.get("errors") or []:
            print(f" - error: {error}")
        alert = payload.get("alert")
        if isinstance(alert, dict):
            print(f"ALERT: {alert.get('message')}")
    elif command == "recordings" and isinstance(payload, dict):
        summaries = payload.get("recordings")
        if summaries is None and "summary" in payload:
            summaries = {payload.get("camera_id"): payload["summary"]}
        if not summaries:
            print("No recordings.")
        for camera_id, summary in (summaries or {}).items():
            print(
                f"{camera_id}: {summary.get('segment_count', 0)} segment(s), "
                f"{_format_bytes(summary.get('total_bytes'))}, "
                f"oldest {summary.get('oldest') or '-'}, newest {summary.get('newest') or '-'}"
            )
    elif command == "viewers" and isinstance(payload, dict):
        viewers = payload.get("viewers") or {}
        if not viewers:
            print("No cameras are relayed.")
        for camera_id, url in viewers.items():
            print(f"{camera_id}: {url}")
    elif isinstance(payload, str):
        print(payload, end="" if payload.endswith("\n") else "\n")
    else:
        print(json.dumps(payload, indent=2))


def _request(client: httpx.Client, args: argparse.Namespace) -> httpx.Response:
    command = args.command
    if command == "add":
        return client.post(
            "/api/cameras",
            json={"camera_id": args.camera_id, "uri": args.uri, "enabled": not args.disabled},
        )
    if command == "remove":
        return client.delete(f"/api/cameras/{args.camera_id}")
    if command in {"enable", "disable"}:
        return client.post(f"/api/cameras/{args.camera_id}/{command}")
    if command == "status":
        if args.camera_id:
            return client.get(f"/api/cameras/{args.camera_id}")
        return client.get("/api/cameras")
    if command == "gc-now":
        return client.post("/api/retention/run")
    if command == "recordings":
        if args.camera_id:
            return client.get(f"/api/recordings/{args.camera_id}")
        return client.get("/api/recordings")
    if command == "relay-config":
        return client.get("/api/relay-config")
    if command == "viewers":
        return client.get("/api/viewers")
    raise ValueError(f"Unknown command {command!r}")


def serve(args: argparse.Namespace) -> int:
    """Run the recorder and its API until interrupted."""

    import uvicorn

    from .app import create_app
    from .config import load_config
    from .errors import NvrError

    configure_logging(args.log_level)
    try:
        config = load_config(args.config)
        if args.host or args.port:
            config = replace(
                config,
                api=replace(
                    config.api,
                    host=args.host or config.api.host,
                    port=args.port or config.api.port,
                ),
            )
        app = create_app(config)
    except NvrError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    server = uvicorn.Server(
        uvicorn.Config(
            app=app,
            host=config.api.host,
            port=config.api.port,
            log_level=args.log_level.lower(),
            timeout_keep_alive=5,
            use_colors=False,
        )
    )
    server.run()
    return EXIT_OK


def run(argv: Sequence[str] | None = None, *, client: httpx.Client | None = None) -> int:
    """Execute the CLI with *argv* arguments.

    ``client`` replaces the HTTP client built from ``--url``; any
    ``httpx.Client`` (including a FastAPI ``TestClient``) works.
    """

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "serve":
        return serve(args)

    owns_client = client is None
    if client is None:
        client = httpx.Client(base_url=args.url, timeout=args.timeout)
    try:
        response = _request(client, args)
    except httpx.HTTPError as exc:
        print(f"error: unable to reach recorder at {args.url}: {exc}", file=sys.stderr)
        return EXIT_VALIDATION
    finally:
        if owns_client:
            client.close()

    code = exit_code_for_status(response.status_code)
    if code != EXIT_OK:
        detail = _error_detail(response)
        if args.json:
            json.dump({"error": detail, "status": response.status_code}, sys.stdout)
            sys.stdout.write("\n")
        else:
            print(f"error: {detail}", file=sys.stderr)
        return code

    if response.status_code == 204 or not response.content:
        payload: object = {}
    elif response.headers.get("content-type", "").startswith("application/json"):
        payload = response.json()
    else:
        payload = response.text
    if args.json and not isinstance(payload, str):
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
    else:
        _print_human(args.command, payload)
    return EXIT_OK


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``edge-nvr`` console script."""

    return run(argv)


__all__ = [
    "build_parser",
    "configure_logging",
    "exit_code_for_status",
    "main",
    "run",
    "serve",
]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
