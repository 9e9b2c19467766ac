# stack_engine/run_apply.py
"""One-shot apply: load the deployment spec, converge the stack, print the report."""

import json
import logging
import sys
from typing import Optional

import click

from stack_engine.config import settings
from stack_engine.container import build_container
from stack_engine.core.errors import CycleError, SpecValidationError

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@click.command()
@click.option(
    "--spec", "spec_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Deployment spec (.yaml/.yml/.toml). Defaults to STACK_SPEC_PATH.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.option("--log-level", default=None, help="Override STACK_LOG_LEVEL.")
def main(spec_path: Optional[str], as_json: bool, log_level: Optional[str]) -> None:
    """Apply the deployment spec once and exit non-zero unless every service is HEALTHY."""
    configure_logging(log_level or settings.log_level)
    container = build_container(settings)

    try:
        report = container.apply(spec_path)
    except SpecValidationError as e:
        click.echo(str(e), err=True)
        sys.exit(2)
    except CycleError as e:
        click.echo(str(e), err=True)
        sys.exit(2)

    if as_json:
        click.echo(json.dumps({
            "report_id": str(report.report_id),
            "generation": report.generation,
            "successful": report.successful,
            "cancelled": report.cancelled,
            "outcomes": [
                {"service_id": o.service_id, "phase": o.phase.value, "causes": o.causes}
                for o in report.outcomes
            ],
            "removed": report.removed,
        }, indent=2))
    else:
        click.echo(f"Apply {report.report_id} (generation {report.generation}): {report.summary()}")
        for outcome in report.outcomes:
            line = f"  {outcome.service_id:<24} {outcome.phase.value}"
            if outcome.causes:
                line += f"  {' <- '.join(outcome.causes)}"
            click.echo(line)

    sys.exit(0 if report.successful else 1)


if __name__ == "__main__":
    main()
