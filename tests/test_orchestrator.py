"""
Tests for the command pipeline: classify -> match/draft -> confirm -> mutate
"""
from datetime import date, datetime

import pytest

from conftest import NOW, TZ, build_event
from smartcal.agent.orchestrator import CommandOrchestrator
from smartcal.agent.schemas import CreateEventArguments, LLMReply
from smartcal.models import RecurrenceRule
from smartcal.state import StoreError

SESSION = "s1"


def tomorrow(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 11, hour, minute)


async def run(orchestrator, message: str, session_id: str = SESSION):
    return await orchestrator.handle_command(message, session_id=session_id)


class TestDelete:
    """Delete with confirmation"""

    @pytest.mark.asyncio
    async def test_single_match_then_confirm(self, orchestrator, store, confirmations):
        meeting = await store.create(build_event("团队会议", tomorrow(10)))

        prompt = await run(orchestrator, "删除明天的团队会议")
        assert prompt.success
        assert prompt.needs_confirmation
        assert prompt.intent == "delete"
        assert [ev.id for ev in prompt.candidate_events] == [meeting.id]
        assert confirmations.is_awaiting(SESSION)

        done = await run(orchestrator, "确认")
        assert done.success
        assert done.function_calls[0].name == "deleteCalendarEvent"
        assert done.function_calls[0].arguments["eventIds"] == [meeting.id]
        assert store.get_by_id(meeting.id) is None
        assert not confirmations.is_awaiting(SESSION)

    @pytest.mark.asyncio
    async def test_weak_keyword_lists_candidates(self, orchestrator, store, confirmations):
        for day in (11, 12, 13):
            await store.create(build_event(f"会议{day}", datetime(2026, 3, day, 10, 0)))

        response = await run(orchestrator, "清除会议")
        assert not response.success
        assert not response.needs_confirmation
        assert len(response.candidate_events) == 3
        assert not confirmations.is_awaiting(SESSION)

    @pytest.mark.asyncio
    async def test_batch_delete(self, orchestrator, store):
        await store.create(build_event("团队会议", tomorrow(10)))
        await store.create(build_event("项目会议", tomorrow(14)))

        prompt = await run(orchestrator, "删除明天的会议")
        assert prompt.needs_confirmation
        assert len(prompt.candidate_events) == 2

        done = await run(orchestrator, "确认")
        assert done.success
        assert "批量删除成功" in done.message
        assert done.function_calls[0].arguments["count"] == 2
        assert store.all_events() == []

    @pytest.mark.asyncio
    async def test_no_match(self, orchestrator, store):
        await store.create(build_event("团队会议", tomorrow(10)))
        response = await run(orchestrator, "删除明天的牙医预约")
        assert not response.success
        assert "未找到匹配的事件" in response.message

    @pytest.mark.asyncio
    async def test_occurrence_delete_adds_exception(self, orchestrator, store):
        series = await store.create(build_event("晨跑", datetime(2026, 3, 2, 7, 0),
                                                recurrence=RecurrenceRule(freq="daily")))

        prompt = await run(orchestrator, "删除明天的晨跑")
        assert prompt.needs_confirmation
        assert prompt.candidate_events[0].is_occurrence

        done = await run(orchestrator, "确认")
        assert done.success
        base = store.get_by_id(series.id)
        assert base.recurrence.exceptions == [date(2026, 3, 11)]


class TestConfirmationLifecycle:
    """Cancel, expiry and stale contexts"""

    @pytest.mark.asyncio
    async def test_cancel_keeps_event(self, orchestrator, store):
        meeting = await store.create(build_event("团队会议", tomorrow(10)))
        await run(orchestrator, "删除明天的团队会议")

        cancelled = await run(orchestrator, "取消")
        assert cancelled.success
        assert cancelled.intent == "cancel"
        assert "已保留" in cancelled.message
        assert store.get_by_id(meeting.id) is not None

        again = await run(orchestrator, "取消")
        assert again.message == "✅ 没有待取消的操作。"

    @pytest.mark.asyncio
    async def test_confirm_without_pending(self, orchestrator):
        response = await run(orchestrator, "确认")
        assert not response.success
        assert response.message == "❌ 没有待确认的删除操作。"

    @pytest.mark.asyncio
    async def test_expired_confirmation(self, orchestrator, store, clock):
        meeting = await store.create(build_event("团队会议", tomorrow(10)))
        await run(orchestrator, "删除明天的团队会议")
        clock.advance(301)

        response = await run(orchestrator, "确认")
        assert not response.success
        assert store.get_by_id(meeting.id) is not None

    @pytest.mark.asyncio
    async def test_other_command_drops_pending(self, orchestrator, store):
        meeting = await store.create(build_event("团队会议", tomorrow(10)))
        await run(orchestrator, "删除明天的团队会议")
        await run(orchestrator, "今天有哪些事件")

        response = await run(orchestrator, "确认")
        assert not response.success
        assert store.get_by_id(meeting.id) is not None

    @pytest.mark.asyncio
    async def test_sessions_do_not_share_confirmations(self, orchestrator, store):
        meeting = await store.create(build_event("团队会议", tomorrow(10)))
        await run(orchestrator, "删除明天的团队会议", session_id="alice")

        response = await run(orchestrator, "确认", session_id="bob")
        assert not response.success
        assert store.get_by_id(meeting.id) is not None

    @pytest.mark.asyncio
    async def test_event_changed_before_confirm(self, orchestrator, store):
        meeting = await store.create(build_event("团队会议", tomorrow(10)))
        await run(orchestrator, "删除明天的团队会议")
        await store.update(meeting.id, {"location": "会议室A"})

        response = await run(orchestrator, "确认")
        assert not response.success
        assert "已被其他操作修改" in response.message
        assert store.get_by_id(meeting.id).version == 2

    def test_clear_confirmation(self, orchestrator, confirmations):
        assert not orchestrator.clear_confirmation(SESSION)


class TestUpdate:
    """Update with confirmation"""

    @pytest.mark.asyncio
    async def test_move_to_new_time(self, orchestrator, store):
        meeting = await store.create(build_event("团队会议", tomorrow(10)))

        prompt = await run(orchestrator, "把明天的团队会议改到下午4点")
        assert prompt.needs_confirmation
        assert prompt.intent == "update"

        done = await run(orchestrator, "确认")
        assert done.success
        assert done.function_calls[0].name == "updateCalendarEvent"
        updated = store.get_by_id(meeting.id)
        assert updated.start == tomorrow(16)
        assert updated.end == tomorrow(17)
        assert updated.version == 2

    @pytest.mark.asyncio
    async def test_move_into_conflict_is_blocked(self, orchestrator, store):
        meeting = await store.create(build_event("团队会议", tomorrow(10)))
        await store.create(build_event("客户拜访", tomorrow(16)))

        await run(orchestrator, "把明天的团队会议改到下午4点")
        response = await run(orchestrator, "确认")
        assert not response.success
        assert "客户拜访" in response.message
        assert store.get_by_id(meeting.id).start == tomorrow(10)

    @pytest.mark.asyncio
    async def test_move_from_another_timezone(self, orchestrator, store):
        meeting = await store.create(build_event("团队会议", tomorrow(10)))

        await orchestrator.handle_command("把明天的团队会议改到下午4点", session_id=SESSION, timezone="Asia/Tokyo")
        done = await orchestrator.handle_command("确认", session_id=SESSION, timezone="Asia/Tokyo")
        assert done.success
        updated = store.get_by_id(meeting.id)
        assert updated.timezone == TZ
        assert updated.start == tomorrow(15)
        assert updated.end == tomorrow(16)


class TestCreate:
    """Create through rules, conflicts and the LLM path"""

    @pytest.mark.asyncio
    async def test_create_from_rules(self, orchestrator, store):
        response = await run(orchestrator, "明天下午3点开项目会议")
        assert response.success
        assert response.intent == "create"
        assert response.function_calls[0].name == "createCalendarEvent"

        [event] = store.all_events()
        assert event.title == "项目会议"
        assert event.start == tomorrow(15)
        assert event.end == tomorrow(16)
        assert event.category == "work"
        assert event.version == 1

    @pytest.mark.asyncio
    async def test_missing_title(self, orchestrator, store):
        response = await run(orchestrator, "明天下午3点安排")
        assert not response.success
        assert "请提供事件的标题和时间" in response.message
        assert store.all_events() == []

    @pytest.mark.asyncio
    async def test_conflict_then_confirm_books_suggestion(self, orchestrator, store):
        review = await store.create(build_event("项目评审", tomorrow(15)))

        blocked = await run(orchestrator, "明天下午3点开项目会议")
        assert not blocked.success
        assert blocked.needs_confirmation
        assert "项目评审" in blocked.message
        assert len(store.all_events()) == 1

        booked = await run(orchestrator, "确认")
        assert booked.success
        created = next(ev for ev in store.all_events() if ev.id != review.id)
        assert created.title == "项目会议"
        assert created.end - created.start == tomorrow(16) - tomorrow(15)
        assert created.end <= review.start or created.start >= review.end

    @pytest.mark.asyncio
    async def test_store_failure_is_reported(self, orchestrator, store, monkeypatch):
        def fail():
            raise StoreError("磁盘已满")

        monkeypatch.setattr(store, "_save_events_to_disk", fail)
        response = await run(orchestrator, "明天下午3点开项目会议")
        assert not response.success
        assert "磁盘已满" in response.message
        assert store.all_events() == []

    @pytest.mark.asyncio
    async def test_llm_function_call(self, store, confirmations):
        calls = []

        async def fake_llm(**kwargs):
            calls.append(kwargs)
            reply = LLMReply(
                function_name="createCalendarEvent",
                arguments=CreateEventArguments(title="需求评审", startTime="2026-03-11T16:00:00",
                                               endTime="2026-03-11T17:30:00", location="会议室B"),
            )
            return reply, {"llm_available": True}

        orchestrator = CommandOrchestrator(store, confirmations=confirmations, llm_enabled=True,
                                           now_fn=lambda tz: NOW, llm_call=fake_llm)
        response = await orchestrator.handle_command("明天下午4点安排需求评审会议", session_id=SESSION)
        assert response.success
        assert calls[0]["timezone"] == "Asia/Shanghai"

        [event] = store.all_events()
        assert event.title == "需求评审"
        assert event.start == tomorrow(16)
        assert event.end == tomorrow(17, 30)
        assert event.location == "会议室B"

    @pytest.mark.asyncio
    async def test_llm_unavailable_falls_back_to_rules(self, store, confirmations):
        async def no_llm(**kwargs):
            return None, {"llm_available": False}

        orchestrator = CommandOrchestrator(store, confirmations=confirmations, llm_enabled=True,
                                           now_fn=lambda tz: NOW, llm_call=no_llm)
        response = await orchestrator.handle_command("明天下午3点开项目会议", session_id=SESSION)
        assert response.success
        assert store.all_events()[0].title == "项目会议"


class TestQuery:
    """Listing, free slots and analysis"""

    @pytest.mark.asyncio
    async def test_list_today(self, orchestrator, store):
        await store.create(build_event("牙医", datetime(2026, 3, 10, 14, 0)))
        await store.create(build_event("团队会议", tomorrow(10)))

        response = await run(orchestrator, "今天有哪些事件")
        assert response.success
        assert response.intent == "query"
        assert [ev.title for ev in response.candidate_events] == ["牙医"]

    @pytest.mark.asyncio
    async def test_free_slots(self, orchestrator, store):
        await store.create(build_event("团队会议", tomorrow(10)))
        response = await run(orchestrator, "明天有空闲时间吗")
        assert response.success
        assert "03/11" in response.message
        assert "09:00 - 10:00" in response.message
        assert "11:00 - 12:00" in response.message

    @pytest.mark.asyncio
    async def test_weekly_analysis(self, orchestrator, store):
        await store.create(build_event("牙医", datetime(2026, 3, 10, 14, 0)))
        await store.create(build_event("团队会议", tomorrow(10)))
        await store.create(build_event("下周会议", datetime(2026, 3, 17, 10, 0)))

        response = await run(orchestrator, "本周统计报告")
        assert response.success
        assert "总事件数：2" in response.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", ["查看本周日程", "这周日程有哪些"])
    async def test_week_schedule(self, orchestrator, store, message):
        await store.create(build_event("牙医", datetime(2026, 3, 10, 14, 0)))
        await store.create(build_event("周会", datetime(2026, 3, 12, 10, 0)))
        await store.create(build_event("下周会议", datetime(2026, 3, 17, 10, 0)))

        response = await run(orchestrator, message)
        assert response.success
        assert [ev.title for ev in response.candidate_events] == ["牙医", "周会"]

    @pytest.mark.asyncio
    async def test_next_week_schedule(self, orchestrator, store):
        await store.create(build_event("牙医", datetime(2026, 3, 10, 14, 0)))
        await store.create(build_event("下周会议", datetime(2026, 3, 17, 10, 0)))

        response = await run(orchestrator, "查看下周日程")
        assert [ev.title for ev in response.candidate_events] == ["下周会议"]

    @pytest.mark.asyncio
    async def test_unknown_gets_help(self, orchestrator):
        response = await run(orchestrator, "你好")
        assert response.success
        assert response.intent == "unknown"
        assert "我可以帮您管理日历" in response.message
