"""
Intent Classifier
=================

Decides, before any tool discovery happens, whether a turn plausibly needs
tools. Plain conversation skips the discovery round-trip entirely.

The classifier is a pure function of the message text:

    greeting / thanks                       -> no tools
    imperative action ("send", "find", ...) -> tools
    capability question ("can you ...?")    -> no tools, unless it names a
                                               concrete target (address, URL)
    external systems / live state           -> tools
    plain question                          -> no tools
    anything else                           -> low confidence -> tools

Low-confidence results always fall back to requires_tools=True: missing a
needed tool is worse than an unnecessary discovery.
"""

import re
from dataclasses import dataclass

LOW_CONFIDENCE = 0.6

_GREETING = re.compile(
    r"^(hi|hello|hey|yo|howdy|hiya|good (morning|afternoon|evening)|thanks|thank you|thx|cheers|"
    r"ok|okay|cool|great|nice|bye|goodbye|see you)( there| so much| a lot)?[\s!.,?]*$"
)

_ACTION_VERBS = (
    "send", "email", "mail", "text", "message", "sms", "call", "search", "find", "look up", "lookup",
    "fetch", "get", "retrieve", "pull", "create", "make", "add", "insert", "update", "edit", "modify",
    "change", "delete", "remove", "cancel", "schedule", "book", "remind", "set", "post", "publish",
    "upload", "download", "list", "show", "check", "open", "draft", "reply", "forward", "invite",
    "calculate", "compute", "convert", "translate", "summarize", "export", "import", "notify",
)

_POLITE_PREFIX = re.compile(r"^(please|pls|kindly|go ahead and|now)\s+")
_REQUEST_PREFIX = re.compile(r"^(can|could|would|will) you( please)?\s+")
_CAPABILITY = re.compile(
    r"^(are you able to|are you capable of|can you|could you|do you have( access to)?|do you support|"
    r"what tools|what can you|what integrations|which tools|what are you able)\b"
)

_EXTERNAL_STATE = re.compile(
    r"\b(my (inbox|emails?|calendar|contacts?|files?|documents?|drive|tasks?|meetings?|schedule)|"
    r"weather|stock price|exchange rate|news|latest|right now|currently|today'?s|this week'?s|"
    r"status of|what time is it|current (time|date))\b"
)

_TOOL_REFERENCE = re.compile(
    r"\b(use the|using the|with the)\b.*\btool\b|\b(gmail|outlook|google calendar|calendar|slack|notion|"
    r"github|jira|hubspot|salesforce|zapier|web search|google drive|dropbox|sms|clicksend)\b"
)

_EMAIL = re.compile(r"[\w.+-]+@[\w-]+\.[\w.-]+")
_URL = re.compile(r"https?://|www\.")
_QUESTION_START = re.compile(r"^(what|why|how|who|when|where|which|is|are|does|do|explain|tell me|define)\b")


@dataclass(frozen=True)
class IntentClassification:
    """
    Attributes:
        requires_tools: Whether tool discovery should run
        confidence: 0-1
        reasoning: Short explanation (for logs and processing details)
        detected_intent: Coarse label
    """
    requires_tools: bool
    confidence: float
    reasoning: str
    detected_intent: str

    def to_dict(self) -> dict:
        return {
            "requires_tools": self.requires_tools,
            "confidence": round(self.confidence, 2),
            "reasoning": self.reasoning,
            "detected_intent": self.detected_intent,
        }


def _starts_with_action(text: str) -> str | None:
    for verb in _ACTION_VERBS:
        if text == verb or text.startswith(verb + " "):
            return verb
    return None


class IntentClassifier:
    """
    Stateless heuristic classifier.

    Example:
        classifier = IntentClassifier()
        result = classifier.classify("Email john@example.com the quarterly report")
        result.requires_tools   # True
    """

    def __init__(self, low_confidence: float = LOW_CONFIDENCE):
        self.low_confidence = low_confidence

    def _decide(self, text: str) -> IntentClassification:
        normalized = " ".join(text.strip().lower().split())

        if not normalized:
            return IntentClassification(False, 1.0, "empty message", "empty")

        if _GREETING.match(normalized):
            return IntentClassification(False, 0.95, "greeting or acknowledgement", "small_talk")

        stripped = _POLITE_PREFIX.sub("", normalized)
        verb = _starts_with_action(stripped)
        if verb:
            return IntentClassification(True, 0.9, f"imperative action verb '{verb}'", "action")

        has_target = bool(_EMAIL.search(normalized) or _URL.search(normalized))

        request = _REQUEST_PREFIX.match(stripped)
        if request and has_target:
            verb = _starts_with_action(stripped[request.end():])
            if verb:
                return IntentClassification(True, 0.85, f"request to '{verb}' a concrete target", "action")

        if _CAPABILITY.match(stripped) and not has_target:
            return IntentClassification(False, 0.8, "question about capabilities, not an action", "capability_question")

        if has_target:
            return IntentClassification(True, 0.8, "message names an address or URL", "action")

        if _TOOL_REFERENCE.search(normalized):
            return IntentClassification(True, 0.8, "references an external tool or integration", "tool_reference")

        if _EXTERNAL_STATE.search(normalized):
            return IntentClassification(True, 0.75, "asks about external or live state", "external_lookup")

        if normalized.endswith("?") or _QUESTION_START.match(normalized):
            return IntentClassification(False, 0.75, "general question answerable without tools", "question")

        return IntentClassification(False, 0.4, "no clear signal", "unclear")

    def classify(self, user_text: str) -> IntentClassification:
        """
        Classify a message.

        Deterministic: the same text always yields the same result.
        """
        result = self._decide(user_text or "")
        if result.confidence < self.low_confidence and not result.requires_tools:
            return IntentClassification(
                True,
                result.confidence,
                f"{result.reasoning}; low confidence, keeping tools available",
                result.detected_intent,
            )
        return result
