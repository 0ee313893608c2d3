"""
Offline console demo: runs concierge conversations against the in-memory
collaborators. No network calls.

Typed lines go through the orchestrator exactly as widget text does. A few
console-only shortcuts stand in for widget buttons:

    :save <product_id>   shortlist a product card
    :remove <product_id> drop a card from the shortlist
    :intent <name>       press a quick-action chip (e.g. ``:intent stylist_contact``)

Usage:
    python console_demo.py
    python console_demo.py --scenario capsule
    python console_demo.py --scenario returns
"""

import argparse
import uuid
from typing import Union

from concierge.analytics import summarize_events
from concierge.config import settings
from concierge.orchestrator import InMemoryCollaborators, build_default_orchestrator
from concierge.schemas.conversation_schema import ConciergeRequest, ConciergeResponse, Intent

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

Step = Union[str, tuple[Intent, dict]]


class ConsoleSession:
    """Drives one concierge session from the terminal."""

    # Pre-scripted scenarios for --scenario flag
    SCENARIOS: dict[str, list[Step]] = {
        "shopping": [
            "show me rings",
            "under $1500, something classic",
            ":save p-aurora-solitaire",
            ":save p-stack-trio",
            "reserve these for me",
        ],
        "capsule": [
            "I'm looking for a custom vintage ring under 2500",
            ":save p-deco-halo",
            "put them on hold",
            "hold it again please",
        ],
        "returns": [
            "where is my order GG-10588?",
            "I want to return it, it's damaged",
            "2 out of 5",
            "ava.reyes@example.com",
        ],
        "unknown": [
            "purple unicorn rainbow",
            "banana telescope",
            "talk to a stylist",
        ],
    }

    MAX_INPUT_LENGTH = 500

    def __init__(self) -> None:
        self.fakes = InMemoryCollaborators.create()
        self.orchestrator = build_default_orchestrator(self.fakes)
        self.session_id = f"console-{uuid.uuid4().hex[:8]}"

    def agent_say(self, text: str) -> None:
        print(f"{GREEN}{BOLD}[{settings.business.concierge_name}]{RESET} {GREEN}{text}{RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    def request_for(self, step: Step) -> ConciergeRequest:
        if isinstance(step, tuple):
            intent, payload = step
            return ConciergeRequest(session_id=self.session_id, explicit_intent=intent, payload=payload)
        for prefix, intent in ((":save ", Intent.SHORTLIST_ADD), (":remove ", Intent.SHORTLIST_REMOVE)):
            if step.startswith(prefix):
                return ConciergeRequest(
                    session_id=self.session_id,
                    explicit_intent=intent,
                    payload={"productId": step.split(maxsplit=1)[1].strip()},
                )
        if step.startswith(":intent "):
            return ConciergeRequest(
                session_id=self.session_id,
                explicit_intent=Intent(step.split(maxsplit=1)[1].strip()),
            )
        return ConciergeRequest(session_id=self.session_id, text=step)

    def _show(self, response: ConciergeResponse) -> None:
        for message in response.messages:
            self.agent_say(message)
        for card in response.cards:
            print(f"    {card.product_id:<22} {card.title:<26} ${card.price:>8,.0f}  score {card.score:.3f}")
        if response.offer:
            print(f"  {YELLOW}[offer] {response.offer.headline}: {response.offer.description}{RESET}")
        if response.form:
            names = ", ".join(f.name + ("" if f.required else "?") for f in response.form.fields)
            print(f"  {YELLOW}[form] {response.form.title} ({names}){RESET}")
        if response.quick_actions:
            labels = " | ".join(a.label for a in response.quick_actions)
            print(f"  {YELLOW}[chips] {labels}{RESET}")
        if response.notice:
            print(f"  {YELLOW}[notice] {response.notice.code.value}{RESET}")
        if response.error:
            print(f"  {RED}[error] {response.error.code.value}{RESET}")
        self.system_log(f"Intent: {response.intent.value} | State: {response.state.value}")

    def _process_input(self, step: Step) -> None:
        try:
            request = self.request_for(step)
        except ValueError:
            print(f"{RED}Unknown console command: {step}{RESET}")
            return
        self._show(self.orchestrator.handle(request))

    def _banner(self, title: str) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  JEWELRY CONCIERGE - {title}{RESET}")
        print(f"{BOLD}  Store: {settings.business.name}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")
        print()

    def _summary(self, label: str) -> None:
        summary = summarize_events(self.fakes.analytics.events)
        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  {label}{RESET}")
        print(f"{DIM}  Intents: {summary['intents']}{RESET}")
        print(f"{DIM}  CSAT: {summary['csat']['responses']} responses, average {summary['csat']['average']}{RESET}")
        print(
            f"{DIM}  Escalations: {summary['escalations']}  Duplicates: {summary['duplicates']}"
            f"  Errors: {summary['errors']}{RESET}"
        )
        print(f"{BOLD}{'=' * 60}{RESET}")

    def run_scenario(self, scenario: str) -> None:
        """Auto-play a pre-scripted scenario for demo purposes."""
        steps = self.SCENARIOS.get(scenario)
        if not steps:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return

        self._banner(f"Scenario: {scenario}")
        for step in steps:
            shown = step if isinstance(step, str) else f"<{step[0].value}>"
            print(f"\n{BLUE}[Shopper] {RESET}{shown}")
            self._process_input(step)
        self._summary(f"Scenario '{scenario}' complete.")

    def run(self) -> None:
        self._banner("Console Demo (type 'quit' to exit)")
        self.agent_say(
            f"Hi, I'm {settings.business.concierge_name} from {settings.business.name}. "
            "How can I help today?"
        )

        while True:
            user_input = input(f"\n{BLUE}[Shopper] {RESET}").strip()
            if not user_input:
                continue
            if user_input.lower() in ("quit", "exit", "q"):
                print(f"\n{DIM}Session ended.{RESET}")
                break
            if len(user_input) > self.MAX_INPUT_LENGTH:
                self.agent_say("That was quite long. Could you keep it brief for me?")
                continue
            self._process_input(user_input)

        self._summary("Conversation complete.")


def main() -> None:
    parser = argparse.ArgumentParser(description="Offline concierge console demo")
    parser.add_argument(
        "--scenario",
        choices=sorted(ConsoleSession.SCENARIOS),
        default=None,
        help="Auto-play a pre-scripted scenario instead of interactive mode",
    )
    args = parser.parse_args()

    session = ConsoleSession()
    if args.scenario:
        session.run_scenario(args.scenario)
    else:
        session.run()


if __name__ == "__main__":
    main()
