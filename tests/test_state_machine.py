import asyncio
import logging

import pytest

from helpers import DONE, IN_PROGRESS, TODO, make_page, make_status, make_ticket, make_transition
from jiraterm.core.errors import InvalidTransition, NotFoundError, ServerError
from jiraterm.models.jira import SearchResult, StatusCategory
from jiraterm.services.cache import TicketCache
from jiraterm.services.state_machine import TicketStateMachine


def _setup(fake_api, key="PROJ-1"):
    fake_api.tickets[key] = make_ticket(key)
    fake_api.transitions[key] = [
        make_transition("21", "Start progress", IN_PROGRESS),
        make_transition("31", "Done", DONE),
    ]
    events = []
    cache = TicketCache(fake_api)
    sm = TicketStateMachine(cache, listener=lambda k, view, phase: events.append((k, view, phase)))
    return cache, sm, events


async def settle():
    for _ in range(50):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_unknown_transition_is_rejected_without_write(fake_api):
    _, sm, events = _setup(fake_api)

    with pytest.raises(InvalidTransition) as exc:
        await sm.apply_transition("PROJ-1", "999")

    assert exc.value.transition_id == "999"
    assert exc.value.target == "PROJ-1"
    assert fake_api.count("execute_transition") == 0
    assert events == []


@pytest.mark.asyncio
async def test_available_transitions_are_cached(fake_api):
    _, sm, _ = _setup(fake_api)
    first = await sm.available_transitions("PROJ-1")
    second = await sm.available_transitions(make_ticket("PROJ-1"))
    assert [t.id for t in first] == ["21", "31"]
    assert first == second
    assert fake_api.count("list_transitions") == 1


@pytest.mark.asyncio
async def test_successful_transition_confirms_server_status(fake_api):
    cache, sm, events = _setup(fake_api)
    fake_api.searches["project = PROJ"] = SearchResult(page=make_page("project = PROJ", ["PROJ-1"]))
    await cache.search("project = PROJ")
    fake_api.execute_gate = asyncio.Event()

    task = asyncio.ensure_future(sm.apply_transition("PROJ-1", "21", comment="on it"))
    await settle()

    pending = sm.status_view("PROJ-1")
    assert pending.pending is True
    assert pending.transition_id == "21"
    assert pending.status.category == StatusCategory.IN_PROGRESS

    fake_api.execute_gate.set()
    ticket = await task

    assert ticket.status.name == "In Progress"
    assert [phase for _, _, phase in events] == ["optimistic", "confirmed"]
    view = sm.status_view("PROJ-1")
    assert view.pending is False
    assert view.status == make_status(IN_PROGRESS)
    assert ("execute_transition", "PROJ-1", "21", "on it") in fake_api.calls
    # ticket, transitions and matching searches were refreshed after the write
    assert fake_api.count("get_ticket") == 2
    await sm.available_transitions("PROJ-1")
    assert fake_api.count("list_transitions") == 2
    await cache.search("project = PROJ")
    assert fake_api.count("search") == 2


@pytest.mark.asyncio
async def test_failed_transition_rolls_back(fake_api):
    cache, sm, events = _setup(fake_api)
    fake_api.execute_error = ServerError("boom", status_code=500)

    with pytest.raises(ServerError):
        await sm.apply_transition("PROJ-1", "31")

    assert [phase for _, _, phase in events] == ["optimistic", "rolled_back"]
    rolled = events[-1][1]
    assert rolled.status == make_status(TODO)
    assert rolled.pending is False
    assert sm.status_view("PROJ-1").status == make_status(TODO)
    # the cache was left alone
    assert cache.cached_ticket("PROJ-1") is not None
    await sm.available_transitions("PROJ-1")
    assert fake_api.count("list_transitions") == 1


@pytest.mark.asyncio
async def test_refetch_failure_after_write_is_surfaced(fake_api):
    cache, sm, events = _setup(fake_api)
    ticket = await cache.get_ticket("PROJ-1")

    async def execute_then_delete(key, transition_id, comment=None):
        fake_api.calls.append(("execute_transition", key, transition_id, comment))
        fake_api.tickets.pop(key)

    fake_api.execute_transition = execute_then_delete

    with pytest.raises(NotFoundError):
        await sm.apply_transition(ticket, "31")

    assert cache.cached_ticket("PROJ-1") is None
    assert sm.status_view("PROJ-1") is None
    assert [phase for _, _, phase in events] == ["optimistic"]


@pytest.mark.asyncio
async def test_transitions_on_one_key_are_serialised(fake_api):
    _, sm, _ = _setup(fake_api)
    fake_api.transitions["PROJ-1"].append(make_transition("11", "Reopen", TODO))
    fake_api.execute_gate = asyncio.Event()

    first = asyncio.ensure_future(sm.apply_transition("PROJ-1", "21"))
    second = asyncio.ensure_future(sm.apply_transition("PROJ-1", "11"))
    await settle()
    assert fake_api.count("execute_transition") == 1

    fake_api.execute_gate.set()
    await asyncio.gather(first, second)

    assert fake_api.max_active_executes == 1
    assert fake_api.count("execute_transition") == 2


@pytest.mark.asyncio
async def test_transitions_on_different_keys_run_concurrently(fake_api):
    _, sm, _ = _setup(fake_api)
    _setup(fake_api, "PROJ-2")
    fake_api.execute_gate = asyncio.Event()

    tasks = [
        asyncio.ensure_future(sm.apply_transition("PROJ-1", "21")),
        asyncio.ensure_future(sm.apply_transition("PROJ-2", "21")),
    ]
    await settle()
    assert fake_api.active_executes == 2

    fake_api.execute_gate.set()
    await asyncio.gather(*tasks)


@pytest.mark.asyncio
async def test_listener_errors_do_not_fail_the_transition(fake_api, caplog):
    cache = TicketCache(fake_api)
    fake_api.tickets["PROJ-1"] = make_ticket("PROJ-1")
    fake_api.transitions["PROJ-1"] = [make_transition("31", "Done", DONE)]

    def broken(key, view, phase):
        raise RuntimeError("ui gone")

    sm = TicketStateMachine(cache, listener=broken)
    with caplog.at_level(logging.WARNING):
        ticket = await sm.apply_transition("PROJ-1", "31")

    assert ticket.status.category == StatusCategory.DONE
    assert "status listener failed" in caplog.text


def test_status_view_unknown_key(fake_api):
    sm = TicketStateMachine(TicketCache(fake_api))
    assert sm.status_view("PROJ-404") is None


@pytest.mark.asyncio
async def test_per_key_locks_are_released_after_use(fake_api):
    _, sm, _ = _setup(fake_api)
    fake_api.execute_gate = asyncio.Event()

    first = asyncio.ensure_future(sm.apply_transition("PROJ-1", "21"))
    second = asyncio.ensure_future(sm.apply_transition("PROJ-1", "31"))
    await settle()
    assert fake_api.max_active_executes == 1
    assert len(sm._locks) == 1

    fake_api.execute_gate.set()
    await asyncio.gather(first, second)

    assert fake_api.count("execute_transition") == 2
    assert sm._locks == {}

    with pytest.raises(InvalidTransition):
        await sm.apply_transition("PROJ-1", "999")
    assert sm._locks == {}
