"""
Tests for keyword intent classification
"""
import pytest

from smartcal.agent.intent_router import (
    IntentClassifier,
    has_date_reference,
    has_time_reference,
    query_kind,
)
from smartcal.agent.schemas import ConfirmationContext, Entities


@pytest.fixture
def classifier():
    return IntentClassifier()


@pytest.fixture
def pending():
    return ConfirmationContext(pending_action="delete", timestamp=0.0)


class TestClassification:
    """Priority order delete -> update -> create -> query -> unknown"""

    def test_delete_with_title_and_date(self, classifier):
        intent = classifier.identify("删除明天的团队会议")
        assert intent.type == "delete"
        assert intent.confidence == 0.95
        assert intent.entities.event_title == "团队会议"
        assert intent.entities.date == "明天"
        assert intent.entities.time is None
        assert intent.suggestions == ["确认删除", "取消操作", "查看要删除的事件"]

    def test_weak_delete_keyword(self, classifier):
        intent = classifier.identify("清除会议")
        assert intent.type == "delete"
        assert intent.entities.event_title == "会议"
        assert intent.confidence == 0.8

    def test_delete_with_time(self, classifier):
        intent = classifier.identify("取消下午3点的会议")
        assert intent.type == "delete"
        assert intent.entities.time == "3点"
        assert intent.confidence == 0.95

    def test_delete_needs_context_or_date(self, classifier):
        assert classifier.identify("不要这样").type != "delete"

    def test_create(self, classifier):
        intent = classifier.identify("明天下午3点开项目会议")
        assert intent.type == "create"
        assert intent.confidence == 0.9
        assert intent.entities.date == "明天"
        assert intent.entities.time == "3点"

    def test_update(self, classifier):
        intent = classifier.identify("把明天的团队会议改到下午4点")
        assert intent.type == "update"
        assert intent.confidence == 0.9

    def test_update_postpone(self, classifier):
        assert classifier.identify("推迟明天的会议").type == "update"

    def test_query(self, classifier):
        intent = classifier.identify("今天有哪些事件")
        assert intent.type == "query"
        assert intent.confidence == 0.8

    def test_free_time_query(self, classifier):
        message = "明天有空闲时间吗"
        assert classifier.identify(message).type == "query"
        assert query_kind(message) == "free_slots"

    def test_analysis_query(self, classifier):
        message = "本周统计报告"
        assert classifier.identify(message).type == "query"
        assert query_kind(message) == "analysis"

    def test_unknown(self, classifier):
        intent = classifier.identify("你好")
        assert intent.type == "unknown"
        assert intent.confidence == 0.1

    def test_message_is_normalized(self, classifier):
        assert classifier.identify("  OK  ", ConfirmationContext(pending_action="delete", timestamp=0)).type == "confirm"


class TestDeleteConfidence:
    """Each extra signal can only raise delete confidence"""

    def test_monotone_over_added_signals(self):
        steps = [
            ("清除", Entities()),
            ("清除", Entities(event_title="团队会议")),
            ("清除", Entities(event_title="团队会议", date="明天")),
            ("清除", Entities(event_title="团队会议", date="明天", time="下午3点")),
            ("删除", Entities(event_title="团队会议", date="明天", time="下午3点")),
        ]
        scores = [IntentClassifier.delete_confidence(message, entities) for message, entities in steps]
        assert scores == sorted(scores)
        assert scores[0] == 0.6
        assert scores[-1] == 0.95

    @pytest.mark.parametrize("entities", [
        Entities(),
        Entities(event_title="牙医"),
        Entities(date="周五", time="10点"),
    ])
    def test_strong_keyword_never_lowers(self, entities):
        weak = IntentClassifier.delete_confidence("清除", entities)
        strong = IntentClassifier.delete_confidence("删除", entities)
        assert weak <= strong <= 0.95


class TestConfirmationReplies:
    """Confirm/cancel short-circuit while a context is pending"""

    @pytest.mark.parametrize("message", ["确认", "好的", "是", "可以", "yes"])
    def test_confirm(self, classifier, pending, message):
        intent = classifier.identify(message, pending)
        assert intent.type == "confirm"
        assert intent.confidence == 0.9

    @pytest.mark.parametrize("message", ["取消", "算了", "不要了", "no"])
    def test_cancel(self, classifier, pending, message):
        assert classifier.identify(message, pending).type == "cancel"

    def test_delete_word_confirms_pending_delete(self, classifier, pending):
        assert classifier.identify("删除", pending).type == "confirm"

    def test_unrelated_message_is_classified_normally(self, classifier, pending):
        assert classifier.identify("明天下午3点开项目会议", pending).type == "create"

    def test_bare_reply_without_context(self, classifier):
        assert classifier.identify("确认").type == "confirm"
        assert classifier.identify("取消").type == "cancel"


class TestReferences:
    """Date and time reference detectors"""

    @pytest.mark.parametrize("message", ["明天", "3月5日", "3.15", "下周", "15号"])
    def test_date_reference(self, message):
        assert has_date_reference(message)

    @pytest.mark.parametrize("message", ["15:30", "下午", "3点", "晚上"])
    def test_time_reference(self, message):
        assert has_time_reference(message)

    def test_no_reference(self):
        assert not has_date_reference("开会")
        assert not has_time_reference("开会")
