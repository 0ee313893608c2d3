"""
Concierge engine entry point.

Runs the console demo against the in-memory collaborators, or sweeps
expired sessions and dedup keys in a long-lived deployment.

Usage:
    Console mode:   python main.py console
    Scenario:       python main.py console --scenario returns
    Summary only:   python main.py summary --scenario shopping
"""

import logging
import sys

from concierge.config import settings

logger = logging.getLogger(__name__)


def _run_console_mode(argv: list[str]) -> None:
    """Start the offline console demo (no collaborators required)."""
    from console_demo import main as console_main

    sys.argv = [sys.argv[0], *argv]
    console_main()


def _run_summary_mode(argv: list[str]) -> None:
    """Replay a scenario silently and print the analytics rollup as JSON."""
    import json

    from concierge.analytics import summarize_events
    from console_demo import ConsoleSession

    scenario = argv[argv.index("--scenario") + 1] if "--scenario" in argv else "shopping"
    session = ConsoleSession()
    for step in session.SCENARIOS.get(scenario, []):
        session.orchestrator.handle(session.request_for(step))
    print(json.dumps(summarize_events(session.fakes.analytics.events), indent=2))


if __name__ == "__main__":
    logger.info("Starting concierge for '%s'", settings.business.name)
    mode = sys.argv[1] if len(sys.argv) > 1 else "console"
    if mode == "summary":
        _run_summary_mode(sys.argv[2:])
    else:
        _run_console_mode(sys.argv[2:] if mode == "console" else sys.argv[1:])
