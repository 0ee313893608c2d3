from concierge.conversation.intent_classifier import (
    Classification,
    ClassifierInput,
    IntentClassifier,
    IntentRule,
)
from concierge.conversation.offer_trigger import OfferTriggerEvaluator
from concierge.conversation.recommender import RecommendationEngine
from concierge.conversation.slot_manager import SlotManager
from concierge.conversation.state_machine import (
    Action,
    ActionType,
    ConversationStateMachine,
    SessionDelta,
    TransitionResult,
)

__all__ = [
    "Action",
    "ActionType",
    "Classification",
    "ClassifierInput",
    "ConversationStateMachine",
    "IntentClassifier",
    "IntentRule",
    "OfferTriggerEvaluator",
    "RecommendationEngine",
    "SessionDelta",
    "SlotManager",
    "TransitionResult",
]
