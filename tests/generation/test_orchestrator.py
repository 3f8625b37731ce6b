import asyncio
from unittest.mock import MagicMock

import pytest

from aigen.services.generation.exceptions import ErrorKind, GenerationError
from aigen.services.generation.interfaces import (
    AuthConfig,
    GenerationConfig,
    LifecycleConfig,
    ModerationConfig,
)
from aigen.services.generation.models import (
    GenerationPhase,
    GenerationState,
    ModerationResult,
    NeedsConfirmation,
    Resolved,
    Skipped,
)
from aigen.services.generation.orchestrator import GenerationOrchestrator
from tests.fixtures.generation_fakes import (
    FakeConnectivity,
    FakeLedger,
    FakeModeration,
    FakeSavingStrategy,
    FakeStrategy,
    make_alert_messages,
)


def _make(strategy, alerts, *, connectivity=None, **config):
    config.setdefault("alert_messages", make_alert_messages())
    return GenerationOrchestrator(
        strategy,
        GenerationConfig(**config),
        connectivity=connectivity or FakeConnectivity(),
        alerts=alerts,
    )


async def _until(predicate, attempts=50):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def _flagged(presenter=None):
    moderation = FakeModeration(ModerationResult(allowed=False, warnings=["Be nice"]))
    return ModerationConfig(
        check_content=moderation.check_content, on_show_warning=presenter
    )


@pytest.mark.asyncio
async def test_successful_attempt_walks_phases(alerts, ledger):
    on_success = MagicMock()
    strategy = FakeStrategy(result={"image_url": "https://cdn/a.png"}, cost=2)
    orchestrator = _make(strategy, alerts, credits=ledger, on_success=on_success)
    seen = []
    orchestrator.subscribe(seen.append)

    outcome = await orchestrator.generate({"prompt": "a cat"})

    assert outcome == Resolved(status="success", result={"image_url": "https://cdn/a.png"})
    assert [s.status for s in seen] == [
        GenerationPhase.CHECKING,
        GenerationPhase.GENERATING,
        GenerationPhase.GENERATING,
        GenerationPhase.GENERATING,
        GenerationPhase.SUCCESS,
    ]
    assert [s.progress for s in seen] == [0, 10, 70, 90, 100]
    assert all(s.is_generating for s in seen[:-1])
    assert orchestrator.is_generating is False
    assert orchestrator.result == {"image_url": "https://cdn/a.png"}
    assert orchestrator.error is None
    assert ledger.checks == [2]
    assert ledger.deductions == [2]
    on_success.assert_called_once_with({"image_url": "https://cdn/a.png"})
    assert alerts.errors == []
    assert alerts.successes == []


@pytest.mark.asyncio
async def test_success_alert_when_configured(alerts):
    orchestrator = _make(
        FakeStrategy(), alerts, alert_messages=make_alert_messages(success="Done!")
    )

    await orchestrator.generate("x")

    assert alerts.successes == [("Success", "Done!")]


@pytest.mark.asyncio
async def test_saving_strategy_saves_for_user(alerts):
    strategy = FakeSavingStrategy(result="img")
    orchestrator = _make(strategy, alerts, user_id="user-1")
    seen = []
    orchestrator.subscribe(seen.append)

    await orchestrator.generate("x")

    assert strategy.saved == [("img", "user-1")]
    assert GenerationPhase.SAVING in [s.status for s in seen]


@pytest.mark.asyncio
async def test_save_skipped_without_user(alerts):
    strategy = FakeSavingStrategy(result="img")

    await _make(strategy, alerts).generate("x")

    assert strategy.saved == []


@pytest.mark.asyncio
async def test_save_failure_is_save_error(alerts, ledger):
    on_error = MagicMock()
    strategy = FakeSavingStrategy(save_error=RuntimeError("disk full"))
    orchestrator = _make(
        strategy, alerts, user_id="user-1", credits=ledger, on_error=on_error
    )

    outcome = await orchestrator.generate("x")

    assert outcome.status == "error"
    assert outcome.error.kind is ErrorKind.SAVE
    assert outcome.error.message == "Failed to save"
    assert alerts.errors == [("Error", "Could not save")]
    assert ledger.deductions == []
    on_error.assert_called_once_with(outcome.error)


@pytest.mark.asyncio
async def test_offline_fails_fast(alerts):
    strategy = FakeStrategy()
    orchestrator = _make(strategy, alerts, connectivity=FakeConnectivity(online=False))

    outcome = await orchestrator.generate("x")

    assert outcome.error.kind is ErrorKind.NETWORK
    assert outcome.error.message == "No internet connection"
    assert strategy.execute_calls == []
    assert orchestrator.status is GenerationPhase.ERROR
    assert orchestrator.progress == 0
    assert alerts.errors == [("Error", "Check your connection")]


@pytest.mark.asyncio
async def test_no_connectivity_probe_assumes_online(alerts):
    orchestrator = GenerationOrchestrator(
        FakeStrategy(), GenerationConfig(alert_messages=make_alert_messages()), alerts=alerts
    )

    outcome = await orchestrator.generate("x")

    assert outcome.succeeded


@pytest.mark.asyncio
async def test_precheck_decline_returns_to_idle(alerts):
    on_exhausted = MagicMock()
    strategy = FakeStrategy()
    orchestrator = _make(
        strategy,
        alerts,
        credits=FakeLedger(has_credits=False),
        on_credits_exhausted=on_exhausted,
    )

    outcome = await orchestrator.generate("x")

    assert outcome == Skipped(reason="insufficient_credits")
    assert orchestrator.status is GenerationPhase.IDLE
    assert orchestrator.is_generating is False
    assert strategy.execute_calls == []
    assert alerts.errors == []
    on_exhausted.assert_called_once_with()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "ledger",
    [FakeLedger(deduct_result=False), FakeLedger(deduct_error=RuntimeError("db down"))],
)
async def test_deduction_failure_is_credits_error(alerts, ledger):
    on_exhausted = MagicMock()
    orchestrator = _make(
        FakeStrategy(), alerts, credits=ledger, on_credits_exhausted=on_exhausted
    )

    outcome = await orchestrator.generate("x")

    assert outcome.error.kind is ErrorKind.CREDITS
    assert orchestrator.status is GenerationPhase.ERROR
    assert alerts.errors == [("Error", "Not enough credits")]
    on_exhausted.assert_called_once_with()


@pytest.mark.asyncio
async def test_strategy_error_is_classified_and_alerted_once(alerts):
    on_error = MagicMock()
    orchestrator = _make(
        FakeStrategy(error=RuntimeError("socket hang up")), alerts, on_error=on_error
    )

    outcome = await orchestrator.generate("x")

    assert outcome.error.kind is ErrorKind.NETWORK
    assert outcome.error.message == "socket hang up"
    assert isinstance(orchestrator.error, GenerationError)
    assert alerts.errors == [("Error", "Check your connection")]
    on_error.assert_called_once()


@pytest.mark.asyncio
async def test_second_generate_while_in_flight_is_skipped(alerts):
    gate = asyncio.Event()
    strategy = FakeStrategy(gate=gate)
    orchestrator = _make(strategy, alerts)

    first = asyncio.create_task(orchestrator.generate("one"))
    await _until(lambda: strategy.execute_calls)

    assert orchestrator.is_generating is True
    assert await orchestrator.generate("two") == Skipped()

    gate.set()
    assert (await first).succeeded
    assert strategy.execute_calls == ["one"]
    assert (await orchestrator.generate("three")).succeeded


@pytest.mark.asyncio
async def test_progress_is_clamped_and_frozen_after_terminal(alerts):
    strategy = FakeStrategy(progress_updates=[150, -5, 42])
    orchestrator = _make(strategy, alerts)
    seen = []
    orchestrator.subscribe(lambda s: seen.append(s.progress))

    await orchestrator.generate("x")
    strategy.last_on_progress(55)

    assert seen[2:5] == [100, 0, 42]
    assert orchestrator.progress == 100


@pytest.mark.asyncio
async def test_flagged_without_presenter_is_policy_error(alerts):
    strategy = FakeStrategy()
    orchestrator = _make(strategy, alerts, moderation=_flagged())

    outcome = await orchestrator.generate("x")

    assert outcome.error.kind is ErrorKind.POLICY
    assert strategy.execute_calls == []
    assert alerts.errors == [("Error", "Content not allowed")]


@pytest.mark.asyncio
async def test_flagged_with_presenter_then_proceed(alerts):
    presenter = MagicMock()
    on_success = MagicMock()
    strategy = FakeStrategy(result="img")
    orchestrator = _make(
        strategy, alerts, moderation=_flagged(presenter), on_success=on_success
    )

    outcome = await orchestrator.generate("x")

    assert isinstance(outcome, NeedsConfirmation)
    assert outcome.warnings == ["Be nice"]
    presenter.assert_called_once()
    assert orchestrator.status is GenerationPhase.MODERATING
    assert orchestrator.is_generating is True
    assert await orchestrator.generate("y") == Skipped()
    assert strategy.execute_calls == []

    resolved = await outcome.proceed()

    assert resolved == Resolved(status="success", result="img")
    assert orchestrator.status is GenerationPhase.SUCCESS
    assert orchestrator.result == "img"
    assert strategy.execute_calls == ["x"]
    on_success.assert_called_once_with("img")
    assert await outcome.proceed() is None
    assert strategy.execute_calls == ["x"]


@pytest.mark.asyncio
async def test_stale_proceed_after_reset_does_not_execute(alerts, ledger):
    gate = asyncio.Event()
    strategy = FakeStrategy(gate=gate)
    orchestrator = _make(strategy, alerts, credits=ledger, moderation=_flagged(MagicMock()))

    stale = await orchestrator.generate("first")
    orchestrator.reset()
    fresh = await orchestrator.generate("second")
    running = asyncio.create_task(fresh.proceed())
    await _until(lambda: strategy.execute_calls)

    assert await stale.proceed() is None
    assert strategy.execute_calls == ["second"]

    gate.set()
    assert (await running).succeeded
    assert ledger.deductions == [1]


@pytest.mark.asyncio
async def test_proceed_after_close_does_not_execute(alerts, ledger):
    strategy = FakeStrategy()
    orchestrator = _make(strategy, alerts, credits=ledger, moderation=_flagged(MagicMock()))

    outcome = await orchestrator.generate("x")
    orchestrator.close()

    assert await outcome.proceed() is None
    assert strategy.execute_calls == []
    assert ledger.deductions == []


@pytest.mark.asyncio
async def test_flagged_then_cancel_returns_to_idle(alerts):
    strategy = FakeStrategy()
    orchestrator = _make(strategy, alerts, moderation=_flagged(MagicMock()))

    outcome = await orchestrator.generate("x")
    outcome.cancel()

    assert orchestrator.status is GenerationPhase.IDLE
    assert orchestrator.is_generating is False
    assert await outcome.proceed() is None
    assert strategy.execute_calls == []
    assert alerts.errors == []
    assert isinstance(await orchestrator.generate("again"), NeedsConfirmation)


@pytest.mark.asyncio
async def test_presenter_receives_working_continuations(alerts):
    continuations = {}

    def presenter(warnings, on_cancel, on_proceed):
        continuations.update(cancel=on_cancel, proceed=on_proceed)

    strategy = FakeStrategy(result="img")
    orchestrator = _make(strategy, alerts, moderation=_flagged(presenter))

    await orchestrator.generate("x")
    resolved = await continuations["proceed"]()

    assert resolved.succeeded
    assert orchestrator.status is GenerationPhase.SUCCESS


@pytest.mark.asyncio
async def test_lifecycle_complete_then_auto_reset(alerts):
    on_complete = MagicMock()
    orchestrator = _make(
        FakeStrategy(result="img"),
        alerts,
        lifecycle=LifecycleConfig(
            on_complete=on_complete, complete_delay=0.01, auto_reset=True, reset_delay=0.01
        ),
    )

    await orchestrator.generate("x")
    assert orchestrator.status is GenerationPhase.SUCCESS
    on_complete.assert_not_called()

    await asyncio.sleep(0.1)

    on_complete.assert_called_once_with("success", "img", None)
    assert orchestrator.status is GenerationPhase.IDLE
    assert orchestrator.result is None


@pytest.mark.asyncio
async def test_lifecycle_reports_error_without_auto_reset(alerts):
    on_complete = MagicMock()
    orchestrator = _make(
        FakeStrategy(error=ValueError("bad")),
        alerts,
        lifecycle=LifecycleConfig(on_complete=on_complete, complete_delay=0.01),
    )

    outcome = await orchestrator.generate("x")
    await asyncio.sleep(0.05)

    on_complete.assert_called_once_with("error", None, outcome.error)
    assert orchestrator.status is GenerationPhase.ERROR


@pytest.mark.asyncio
async def test_reset_cancels_pending_lifecycle(alerts):
    on_complete = MagicMock()
    orchestrator = _make(
        FakeStrategy(),
        alerts,
        lifecycle=LifecycleConfig(on_complete=on_complete, complete_delay=0.01),
    )

    await orchestrator.generate("x")
    orchestrator.reset()
    await asyncio.sleep(0.05)

    on_complete.assert_not_called()
    assert orchestrator.status is GenerationPhase.IDLE


@pytest.mark.asyncio
async def test_reset_abandons_in_flight_attempt(alerts):
    gate = asyncio.Event()
    on_success = MagicMock()
    strategy = FakeStrategy(result="late", gate=gate)
    orchestrator = _make(strategy, alerts, on_success=on_success)

    task = asyncio.create_task(orchestrator.generate("x"))
    await _until(lambda: strategy.execute_calls)
    orchestrator.reset()

    assert orchestrator.status is GenerationPhase.IDLE
    assert orchestrator.is_generating is False

    gate.set()
    await task

    assert orchestrator.status is GenerationPhase.IDLE
    assert orchestrator.result is None
    on_success.assert_not_called()


@pytest.mark.asyncio
async def test_close_suppresses_late_updates(alerts):
    gate = asyncio.Event()
    on_error = MagicMock()
    strategy = FakeStrategy(error=RuntimeError("boom"), gate=gate)
    orchestrator = _make(strategy, alerts, on_error=on_error)
    seen = []
    orchestrator.subscribe(seen.append)

    task = asyncio.create_task(orchestrator.generate("x"))
    await _until(lambda: strategy.execute_calls)
    orchestrator.close()
    count = len(seen)

    gate.set()
    await task

    assert len(seen) == count
    assert alerts.errors == []
    on_error.assert_not_called()
    assert await orchestrator.generate("y") == Skipped()


@pytest.mark.asyncio
async def test_unsubscribe_and_failing_listener(alerts):
    orchestrator = _make(FakeStrategy(), alerts)
    seen = []
    unsubscribe = orchestrator.subscribe(seen.append)
    orchestrator.subscribe(MagicMock(side_effect=RuntimeError("listener bug")))

    outcome = await orchestrator.generate("x")
    unsubscribe()
    orchestrator.reset()

    assert outcome.succeeded
    assert seen[-1].status is GenerationPhase.SUCCESS


@pytest.mark.asyncio
async def test_failing_callback_does_not_change_outcome(alerts):
    orchestrator = _make(
        FakeStrategy(result="img"),
        alerts,
        on_success=MagicMock(side_effect=RuntimeError("ui gone")),
    )

    outcome = await orchestrator.generate("x")

    assert outcome.succeeded
    assert orchestrator.status is GenerationPhase.SUCCESS


@pytest.mark.asyncio
async def test_end_to_end_success_state(alerts):
    ledger = FakeLedger()
    orchestrator = _make(FakeStrategy(result={"url": "x"}, cost=1), alerts, credits=ledger)

    await orchestrator.generate({"prompt": "cat"})

    assert orchestrator.state == GenerationState(
        status=GenerationPhase.SUCCESS,
        is_generating=False,
        progress=100,
        result={"url": "x"},
        error=None,
    )
    assert ledger.deductions == [1]


@pytest.mark.asyncio
async def test_end_to_end_declined_deduction_withholds_result(alerts):
    on_success = MagicMock()
    orchestrator = _make(
        FakeStrategy(result={"url": "x"}, cost=1),
        alerts,
        credits=FakeLedger(deduct_result=False),
        on_success=on_success,
    )

    outcome = await orchestrator.generate({"prompt": "cat"})

    assert orchestrator.status is GenerationPhase.ERROR
    assert orchestrator.error.kind is ErrorKind.CREDITS
    assert orchestrator.result is None
    assert outcome.result is None
    on_success.assert_not_called()


@pytest.mark.asyncio
async def test_unauthenticated_attempt_returns_to_idle(alerts):
    on_auth_required = MagicMock()
    connectivity = MagicMock()
    strategy = FakeStrategy()
    orchestrator = _make(
        strategy,
        alerts,
        connectivity=connectivity,
        auth=AuthConfig(is_authenticated=lambda: False, on_auth_required=on_auth_required),
    )

    outcome = await orchestrator.generate("x")

    assert outcome == Skipped(reason="auth_required")
    assert orchestrator.status is GenerationPhase.IDLE
    assert orchestrator.is_generating is False
    assert strategy.execute_calls == []
    assert alerts.errors == []
    connectivity.is_online.assert_not_called()
    on_auth_required.assert_called_once_with()


@pytest.mark.asyncio
async def test_async_auth_check_lets_signed_in_user_generate(alerts):
    async def signed_in():
        return True

    orchestrator = _make(FakeStrategy(), alerts, auth=AuthConfig(is_authenticated=signed_in))

    assert (await orchestrator.generate("x")).succeeded


@pytest.mark.asyncio
async def test_cancel_notifies_once_for_current_attempt(alerts):
    on_cancel = MagicMock()
    orchestrator = _make(
        FakeStrategy(), alerts, moderation=_flagged(MagicMock()), on_cancel=on_cancel
    )

    outcome = await orchestrator.generate("x")
    outcome.cancel()
    outcome.cancel()

    on_cancel.assert_called_once_with()

    stale = await orchestrator.generate("y")
    orchestrator.reset()
    stale.cancel()

    on_cancel.assert_called_once_with()
