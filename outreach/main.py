from __future__ import annotations

import argparse
import logging
import os
import sys
import uuid

from fastapi import FastAPI
import uvicorn

from outreach.api.http_app import build_app
from outreach.logging_setup import configure_logging
from outreach.roles import RuntimeRole, validate_role
from outreach.services.bootstrap import RuntimeContainer, build_runtime_container

DEFAULT_PORTS = {"api": 8000, "worker-monitor": 8100}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sequential distribution and recovery engine")
    parser.add_argument("--role", required=True, help="Runtime role (api or worker-monitor)")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None, help="Defaults to 8000 for api, 8100 for worker-monitor")
    parser.add_argument("--dry-run-startup", action="store_true", help="Wire the runtime, log it and exit")
    parser.add_argument("--reload", action="store_true", help="Serve through a reloading app factory (dev mode)")
    return parser.parse_args(argv)


def _role_app(role: RuntimeRole, container: RuntimeContainer, run_id: str) -> FastAPI:
    return build_app(
        role=role.name,
        run_id=run_id,
        worker_loop=container.worker_loop,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )


def create_runtime_app() -> FastAPI:
    """uvicorn factory used with --reload; the role comes from APP_ROLE."""
    configure_logging()
    role = validate_role(os.getenv("APP_ROLE", "api"))
    return _role_app(role, build_runtime_container(role), str(uuid.uuid4()))


def _wiring_summary(container: RuntimeContainer) -> str:
    store = "postgres" if container.settings.database_url else "memory"
    runner = "http" if container.settings.uses_http_runner else "stub"
    return f"store={store} runner={runner}"


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        role = validate_role(args.role)
    except ValueError as exc:
        sys.stderr.write(f"ERROR: {exc}\n")
        return 2

    configure_logging()
    run_id = str(uuid.uuid4())
    context = {"role": role.name, "service": role.name, "run_id": run_id}
    logger = logging.getLogger("runtime")

    container = build_runtime_container(role)
    logger.info("runtime initialized", extra={**context, "status": _wiring_summary(container)})
    if args.dry_run_startup:
        logger.info("dry-run startup complete", extra=context)
        return 0

    port = args.port if args.port is not None else DEFAULT_PORTS[role.name]
    if args.reload:
        os.environ["APP_ROLE"] = role.name
        uvicorn.run(
            "outreach.main:create_runtime_app",
            host=args.host,
            port=port,
            log_level="warning",
            reload=True,
            factory=True,
        )
        return 0

    uvicorn.run(_role_app(role, container, run_id), host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
