"""Tests for the tool-need intent classifier."""

import pytest

from orchestrator.agent.intent import IntentClassifier


@pytest.fixture
def classifier() -> IntentClassifier:
    return IntentClassifier()


@pytest.mark.parametrize("text", ["hello!", "Thanks so much", "good morning", "ok"])
def test_small_talk_needs_no_tools(classifier, text):
    result = classifier.classify(text)
    assert result.requires_tools is False
    assert result.detected_intent == "small_talk"


@pytest.mark.parametrize("text", [
    "Email john@example.com the quarterly report",
    "Please send the invoice to accounting",
    "schedule a meeting with Dana tomorrow",
])
def test_imperative_actions_need_tools(classifier, text):
    result = classifier.classify(text)
    assert result.requires_tools is True
    assert result.detected_intent == "action"


def test_capability_question_needs_no_tools(classifier):
    result = classifier.classify("Can you send emails?")
    assert result.requires_tools is False
    assert result.detected_intent == "capability_question"


def test_request_with_concrete_target_needs_tools(classifier):
    result = classifier.classify("Can you send an email to jane@corp.io?")
    assert result.requires_tools is True
    assert "send" in result.reasoning


def test_live_state_needs_tools(classifier):
    result = classifier.classify("What's the weather in Paris?")
    assert result.requires_tools is True
    assert result.detected_intent == "external_lookup"


def test_general_question_needs_no_tools(classifier):
    result = classifier.classify("What is the capital of France?")
    assert result.requires_tools is False
    assert result.detected_intent == "question"


def test_low_confidence_falls_back_to_tools(classifier):
    result = classifier.classify("banana")
    assert result.requires_tools is True
    assert result.confidence < 0.6
    assert "low confidence" in result.reasoning


def test_classification_is_deterministic(classifier):
    text = "Look up the status of order 1182"
    assert classifier.classify(text) == classifier.classify(text)


def test_to_dict_rounds_confidence(classifier):
    data = classifier.classify("hi").to_dict()
    assert data == {
        "requires_tools": False,
        "confidence": 0.95,
        "reasoning": "greeting or acknowledgement",
        "detected_intent": "small_talk",
    }
