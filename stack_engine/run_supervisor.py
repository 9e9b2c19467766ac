# stack_engine/run_supervisor.py
"""Apply the deployment spec, then supervise: Health Monitor plus the operational API."""

import logging
import signal
import sys
from typing import Optional

import click
import uvicorn

from stack_engine.api.container import set_container
from stack_engine.api.main import app
from stack_engine.config import settings
from stack_engine.container import build_container
from stack_engine.core.errors import CycleError, SpecValidationError
from stack_engine.run_apply import configure_logging

logger = logging.getLogger(__name__)


@click.command()
@click.option(
    "--spec", "spec_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Deployment spec (.yaml/.yml/.toml). Defaults to STACK_SPEC_PATH.",
)
@click.option("--host", default=None, help="API bind address (STACK_API_HOST).")
@click.option("--port", type=int, default=None, help="API port (STACK_API_PORT).")
@click.option("--log-level", default=None, help="Override STACK_LOG_LEVEL.")
def main(spec_path: Optional[str], host: Optional[str], port: Optional[int], log_level: Optional[str]) -> None:
    """Run until SIGINT/SIGTERM."""
    configure_logging(log_level or settings.log_level)
    container = build_container(settings)
    set_container(container)

    logger.info("=" * 80)
    logger.info("🚀 STACK SUPERVISOR")
    logger.info("=" * 80)

    try:
        report = container.apply(spec_path)
    except (SpecValidationError, CycleError) as e:
        logger.error(f"Cannot apply: {e}")
        sys.exit(2)
    logger.info(f"Initial apply: {report.summary()}")

    container.monitor.start()

    def shutdown(sig, frame):
        logger.info("🛑 Shutting down supervisor...")
        container.monitor.stop(timeout=container.settings.monitor_tick_seconds)
        sys.exit(0)

    signal.signal(signal.SIGTERM, shutdown)

    try:
        uvicorn.run(
            app,
            host=host or settings.api_host,
            port=port or settings.api_port,
            log_level=(log_level or settings.log_level).lower(),
        )
    finally:
        container.monitor.stop(timeout=container.settings.monitor_tick_seconds)


if __name__ == "__main__":
    main()
