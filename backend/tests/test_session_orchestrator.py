"""
Session orchestrator: startup, liveness bound, identity transitions and the
session-scoped views, all against the in-memory fakes.

Focus:
    - `initializing` is left exactly once and never re-entered
    - a failed or slow profile resolution degrades instead of blocking
    - results of superseded resolutions are discarded
    - sign-out releases every subscription before it returns
"""
from __future__ import annotations

import asyncio

import pytest

from identity_access.errors import AUTHORIZATION_DENIED, INVALID_CREDENTIALS, TIMEOUT, TRANSPORT_ERROR, AuthError, QueryError
from live_sync.ports import INSERT
from session.orchestrator import STATUS_ANONYMOUS, STATUS_AUTHENTICATED, STATUS_INITIALIZING
from storage.ports import PROGRESS, USERS, RemoteStoreError, RemoteTransportError
from utils.fakes import FakeSession, FakeWorld, settle


async def wait_until(predicate, rounds: int = 200) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def _school() -> FakeWorld:
    world = FakeWorld()
    world.teacher = world.add_user("grace@example.org", "teacher", name="Grace")
    world.student = world.add_user("ada@example.org", "student", name="Ada")
    world.other_student = world.add_user("alan@example.org", "student", name="Alan")
    world.room = world.add_classroom(world.teacher, "Math")
    world.add_progress(world.student, world.room, subject="Algebra", score=88)
    world.add_progress(world.other_student, world.room, subject="Algebra", score=71)
    return world


def _record_states(session: FakeSession) -> list:
    states = []
    session.orchestrator.watch(states.append)
    return states


# --- startup ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_start_without_session_is_anonymous():
    session = FakeSession(_school())
    states = _record_states(session)

    state = await session.orchestrator.start()

    assert state.status == STATUS_ANONYMOUS
    assert [s.status for s in states] == [STATUS_INITIALIZING, STATUS_ANONYMOUS]


@pytest.mark.anyio
async def test_start_restores_session_and_profile_before_leaving_initializing():
    world = _school()
    session = FakeSession(world)
    session.auth.persist("ada@example.org")
    states = _record_states(session)

    state = await session.orchestrator.start()

    assert state.status == STATUS_AUTHENTICATED
    assert state.profile is not None and state.profile.role == "student"
    assert state.degraded is False
    # No authenticated-without-profile state was ever published.
    assert [(s.status, s.profile is not None) for s in states] == [
        (STATUS_INITIALIZING, False),
        (STATUS_AUTHENTICATED, True),
    ]


@pytest.mark.anyio
async def test_start_bootstraps_missing_profile_from_metadata():
    world = FakeWorld()
    uid = world.add_account("new@example.org", metadata={"role": "teacher", "name": "Newbie"})
    session = FakeSession(world)
    session.auth.persist("new@example.org")

    state = await session.orchestrator.start()

    assert state.profile is not None
    assert (state.profile.role, state.profile.display_name, state.profile.provisional) == ("teacher", "Newbie", False)
    assert world.tables[USERS][uid]["role"] == "teacher"


@pytest.mark.anyio
async def test_bootstrap_failure_yields_provisional_profile():
    world = FakeWorld()
    world.add_account("new@example.org", metadata={"role": "student"})
    session = FakeSession(world)
    session.auth.persist("new@example.org")
    session.store.failures.fail("upsert", RemoteStoreError("duplicate key", code="23505", status=409))

    state = await session.orchestrator.start()

    assert state.status == STATUS_AUTHENTICATED
    assert state.profile is not None and state.profile.provisional is True
    assert state.degraded is True


@pytest.mark.anyio
async def test_restore_failure_is_anonymous_not_an_error():
    world = _school()
    session = FakeSession(world)
    session.auth.persist("ada@example.org")
    session.auth.failures.fail("get_session", RemoteTransportError("storage unavailable"))

    state = await session.orchestrator.start()

    assert state.status == STATUS_ANONYMOUS


@pytest.mark.anyio
async def test_resolution_transport_failure_degrades_after_one_retry():
    world = _school()
    session = FakeSession(world)
    session.auth.persist("ada@example.org")
    session.store.failures.fail("select", RemoteTransportError("offline"), times=2)

    state = await session.orchestrator.start()

    assert state.status == STATUS_AUTHENTICATED
    assert state.profile is None
    assert state.resolution_error is not None and state.resolution_error.kind == TRANSPORT_ERROR
    assert session.store.failures.count("select") == 2


@pytest.mark.anyio
async def test_liveness_bound_forces_transition_and_late_profile_still_lands():
    world = _school()
    session = FakeSession(world, init_timeout_seconds=0.05, resolve_timeout_seconds=5.0)
    session.auth.persist("ada@example.org")
    session.store.failures.gate("select")

    state = await session.orchestrator.start()

    assert state.status == STATUS_AUTHENTICATED
    assert state.profile is None
    assert state.resolution_error is not None and state.resolution_error.kind == TIMEOUT

    session.store.failures.ungate("select")
    await wait_until(lambda: session.orchestrator.state.profile is not None)
    assert session.orchestrator.state.profile.id == world.student
    assert session.orchestrator.state.resolution_error is None


@pytest.mark.anyio
async def test_hanging_restore_settles_anonymous():
    session = FakeSession(_school(), init_timeout_seconds=0.05)
    session.auth.failures.gate("get_session")

    state = await session.orchestrator.start()

    assert state.status == STATUS_ANONYMOUS
    session.auth.failures.ungate("get_session")
    await settle()
    assert session.orchestrator.state.status == STATUS_ANONYMOUS


# --- transitions -----------------------------------------------------------------------


@pytest.mark.anyio
async def test_sign_in_resolves_profile():
    world = _school()
    session = FakeSession(world)
    await session.orchestrator.start()

    state = await session.orchestrator.sign_in("grace@example.org", "secret123")

    assert state.status == STATUS_AUTHENTICATED
    assert state.profile is not None and state.profile.is_teacher
    assert session.orchestrator.current_profile() == state.profile


@pytest.mark.anyio
async def test_sign_in_with_hung_bootstrap_write_settles_provisional():
    world = FakeWorld()
    world.add_account("new@example.org", metadata={"role": "teacher"})
    session = FakeSession(world, resolve_timeout_seconds=0.2)
    await session.orchestrator.start()
    session.store.failures.gate("upsert")

    state = await asyncio.wait_for(session.orchestrator.sign_in("new@example.org", "secret123"), 3.0)

    assert state.status == STATUS_AUTHENTICATED
    assert state.profile is not None and state.profile.provisional is True
    assert state.profile.role == "teacher"

    await asyncio.wait_for(session.orchestrator.sign_out(), 3.0)
    assert session.orchestrator.state.status == STATUS_ANONYMOUS
    session.store.failures.ungate("upsert")


@pytest.mark.anyio
async def test_sign_in_failure_leaves_state_untouched():
    session = FakeSession(_school())
    await session.orchestrator.start()

    with pytest.raises(AuthError) as exc:
        await session.orchestrator.sign_in("grace@example.org", "nope-nope")

    assert exc.value.kind == INVALID_CREDENTIALS
    assert session.orchestrator.state.status == STATUS_ANONYMOUS


@pytest.mark.anyio
async def test_token_refresh_does_not_flash_loading():
    world = _school()
    session = FakeSession(world)
    session.auth.persist("ada@example.org")
    await session.orchestrator.start()
    states = _record_states(session)
    states.clear()

    session.auth.refresh_token()
    await session.identity_store.wait_idle()

    assert states, "identity change should publish the refreshed identity"
    assert all(s.status == STATUS_AUTHENTICATED and s.profile is not None for s in states)
    assert session.orchestrator.state.identity.access_token == session.auth.session.access_token


@pytest.mark.anyio
async def test_sign_out_closes_subscriptions_and_blocks_queries():
    world = _school()
    session = FakeSession(world)
    await session.orchestrator.start()
    await session.orchestrator.sign_in("grace@example.org", "secret123")
    for view in ("a", "b", "c"):
        await session.subscriptions.open(view, PROGRESS, on_event=lambda e: None)
    assert len(session.channel.open) == 3

    state = await session.orchestrator.sign_out()

    assert state.status == STATUS_ANONYMOUS
    assert session.channel.open == {}
    assert session.subscriptions.subscriptions == []
    assert session.orchestrator.current_profile() is None
    with pytest.raises(QueryError) as exc:
        await session.orchestrator.progress.list()
    assert exc.value.kind == AUTHORIZATION_DENIED


@pytest.mark.anyio
async def test_sign_out_is_idempotent():
    session = FakeSession(_school())
    await session.orchestrator.start()
    await session.orchestrator.sign_in("ada@example.org", "secret123")

    await session.orchestrator.sign_out()
    state = await session.orchestrator.sign_out()
    await session.identity_store.wait_idle()

    assert state.status == STATUS_ANONYMOUS
    assert session.orchestrator.state.status == STATUS_ANONYMOUS


@pytest.mark.anyio
async def test_sign_out_during_resolution_discards_the_result():
    world = _school()
    session = FakeSession(world)
    await session.orchestrator.start()
    session.store.failures.gate("select")

    signing_in = asyncio.ensure_future(session.orchestrator.sign_in("ada@example.org", "secret123"))
    await wait_until(lambda: session.store.failures.count("select") == 1)
    await session.orchestrator.sign_out()
    session.store.failures.ungate("select")
    await signing_in
    await session.identity_store.wait_idle()

    assert session.orchestrator.state.status == STATUS_ANONYMOUS
    assert session.orchestrator.state.profile is None


@pytest.mark.anyio
async def test_switching_users_drops_previous_subscriptions():
    world = _school()
    session = FakeSession(world)
    await session.orchestrator.start()
    await session.orchestrator.sign_in("grace@example.org", "secret123")
    await session.subscriptions.open("dashboard", PROGRESS, on_event=lambda e: None)

    state = await session.orchestrator.sign_in("ada@example.org", "secret123")

    assert state.profile is not None and state.profile.id == world.student
    assert session.channel.open == {}


@pytest.mark.anyio
async def test_sign_in_racing_startup_ends_with_latest_identity():
    world = _school()
    session = FakeSession(world)
    session.auth.persist("ada@example.org")
    session.auth.failures.gate("get_session")

    starting = asyncio.ensure_future(session.orchestrator.start())
    await settle()
    signing_in = asyncio.ensure_future(session.orchestrator.sign_in("grace@example.org", "secret123"))
    await settle()
    session.auth.failures.ungate("get_session")
    await starting
    await signing_in

    state = session.orchestrator.state
    assert state.status == STATUS_AUTHENTICATED
    assert state.profile is not None and state.profile.id == world.teacher


@pytest.mark.anyio
async def test_sign_up_bootstraps_role_from_hint():
    world = FakeWorld()
    session = FakeSession(world)
    await session.orchestrator.start()

    state = await session.orchestrator.sign_up("Newt@Example.org", "secret123", display_name="Newt", role="teacher")

    assert state.status == STATUS_AUTHENTICATED
    assert (state.profile.role, state.profile.display_name) == ("teacher", "Newt")


@pytest.mark.anyio
async def test_sign_up_pending_confirmation_stays_anonymous():
    session = FakeSession(FakeWorld(), confirm_email=True)
    await session.orchestrator.start()

    state = await session.orchestrator.sign_up("newt@example.org", "secret123")

    assert state.status == STATUS_ANONYMOUS


# --- profile maintenance ---------------------------------------------------------------


@pytest.mark.anyio
async def test_refresh_profile_confirms_provisional_profile():
    world = FakeWorld()
    world.add_account("new@example.org", metadata={"role": "student", "name": "New"})
    session = FakeSession(world)
    session.auth.persist("new@example.org")
    session.store.failures.fail("upsert", RemoteTransportError("blip"))
    await session.orchestrator.start()
    assert session.orchestrator.state.profile.provisional is True

    profile = await session.orchestrator.refresh_profile()

    assert profile is not None and profile.provisional is False
    assert session.orchestrator.state.degraded is False


@pytest.mark.anyio
async def test_update_display_name_refreshes_session_profile():
    world = _school()
    session = FakeSession(world)
    await session.orchestrator.start()
    await session.orchestrator.sign_in("ada@example.org", "secret123")

    profile = await session.orchestrator.update_display_name("Ada L.")

    assert profile.display_name == "Ada L."
    assert session.orchestrator.state.profile.display_name == "Ada L."


# --- live views --------------------------------------------------------------------------


@pytest.mark.anyio
async def test_student_progress_view_follows_own_changes_only():
    world = _school()
    session = FakeSession(world)
    await session.orchestrator.start()
    await session.orchestrator.sign_in("ada@example.org", "secret123")

    model = await session.orchestrator.watch_progress()
    assert [r.student_id for r in model.value] == [world.student]
    assert model.subscription.filters == {"user_id": world.student}

    new_id = world.add_progress(world.student, world.room, subject="Geometry", score=93)
    session.channel.emit(PROGRESS, INSERT, dict(world.tables[PROGRESS][new_id]))
    await model.subscription.wait_idle()

    assert sorted(r.subject for r in model.value) == ["Algebra", "Geometry"]
    assert session.channel.emit(PROGRESS, INSERT, {"id": "x", "user_id": world.other_student}) == 0


@pytest.mark.anyio
async def test_teacher_classroom_view_is_owner_filtered():
    world = _school()
    session = FakeSession(world)
    await session.orchestrator.start()
    await session.orchestrator.sign_in("grace@example.org", "secret123")

    model = await session.orchestrator.watch_classrooms()

    assert [c.name for c in model.value] == ["Math"]
    assert model.subscription.filters == {"teacher_id": world.teacher}
    await session.orchestrator.close()
