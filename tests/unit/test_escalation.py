"""Tests for escalation of unacknowledged alerts."""

import pytest

from resilio.alerts import Alert, AlertDispatcher, AlertSeverity
from resilio.escalation import EscalationConfig, EscalationManager
from resilio.events import AlertAcknowledgedEvent
from resilio.notifications import AlertChannel

MINUTE = 60_000


class CollectingChannel(AlertChannel):
    """Channel that keeps every alert it is asked to send."""

    def __init__(self, ok=True):
        super().__init__()
        self.alerts = []
        self.ok = ok

    async def send(self, alert):
        self.alerts.append(alert)
        return self.ok


class BrokenChannel(AlertChannel):
    """Channel whose transport always raises."""

    async def send(self, alert):
        raise RuntimeError("transport down")


def make_alert(alert_id="alert_1", alert_type="custom", severity=AlertSeverity.HIGH):
    return Alert(id=alert_id, type=alert_type, severity=severity, timestamp_ms=0)


@pytest.fixture
def channel():
    return CollectingChannel()


@pytest.fixture
def manager(scheduler, channel):
    """Manager with 5 minute base interval doubling each round."""
    return EscalationManager(
        EscalationConfig(interval_ms=5 * MINUTE, multiplier=2.0, max_escalations=3),
        scheduler=scheduler,
        channels=[channel],
    )


class TestStart:
    """Tests for deciding whether an alert escalates."""

    def test_qualifying_alert(self, manager, scheduler):
        """A high severity alert starts an escalation and a timer."""
        assert manager.start(make_alert()) is True
        assert manager.get("custom_high") is not None
        assert scheduler.pending_timers == 1

    def test_below_min_severity(self, manager, scheduler):
        """Alerts below the severity floor are ignored."""
        assert manager.start(make_alert(severity=AlertSeverity.MEDIUM)) is False
        assert manager.active() == []
        assert scheduler.pending_timers == 0

    def test_disabled(self, scheduler, channel):
        """Nothing escalates when disabled."""
        manager = EscalationManager(EscalationConfig(enabled=False), scheduler=scheduler, channels=[channel])
        assert manager.start(make_alert()) is False

    def test_without_channels(self, scheduler):
        """Nothing escalates when there is no channel to notify."""
        manager = EscalationManager(scheduler=scheduler, channels=[])
        assert manager.start(make_alert(severity=AlertSeverity.CRITICAL)) is False

    def test_channels_added_later_are_used(self, scheduler):
        """The channel sequence is read when escalating."""
        channels = []
        manager = EscalationManager(scheduler=scheduler, channels=channels)
        channels.append(CollectingChannel())
        assert manager.start(make_alert()) is True

    def test_already_acknowledged(self, manager):
        """Acknowledged alerts never escalate."""
        alert = make_alert()
        alert.acknowledged = True
        assert manager.start(alert) is False

    def test_delay_grows(self, manager):
        """Each round waits interval * multiplier ** level."""
        assert [manager.next_delay_ms(level) for level in range(3)] == [
            5 * MINUTE,
            10 * MINUTE,
            20 * MINUTE,
        ]


class TestRounds:
    """Tests for escalation rounds on the virtual scheduler."""

    @pytest.mark.asyncio
    async def test_rounds_at_growing_intervals(self, manager, scheduler, channel):
        """Rounds fire after 5 minutes, then 10 more, then 20 more."""
        manager.start(make_alert())

        await scheduler.advance(5 * MINUTE - 1)
        assert channel.alerts == []

        await scheduler.advance(1)
        assert len(channel.alerts) == 1
        assert manager.get("custom_high").level == 1

        await scheduler.advance(10 * MINUTE)
        assert len(channel.alerts) == 2

        await scheduler.advance(20 * MINUTE)
        assert len(channel.alerts) == 3

    @pytest.mark.asyncio
    async def test_stops_after_max_rounds(self, manager, scheduler, channel):
        """The escalation ends once max_escalations rounds have run."""
        manager.start(make_alert())
        await scheduler.advance(35 * MINUTE)
        assert len(channel.alerts) == 3
        assert manager.active() == []
        assert scheduler.pending_timers == 0

        await scheduler.advance(120 * MINUTE)
        assert len(channel.alerts) == 3

    @pytest.mark.asyncio
    async def test_keeps_notifying_after_delivery(self, manager, scheduler, channel):
        """A successful delivery does not stop later rounds."""
        manager.start(make_alert())
        await scheduler.advance(15 * MINUTE)

        escalation = manager.get("custom_high")
        assert [a.any_delivered for a in escalation.attempts] == [True, True]
        assert escalation.attempts[0].results == {"CollectingChannel": True}

    @pytest.mark.asyncio
    async def test_acknowledged_alert_stops_before_next_round(self, manager, scheduler, channel):
        """Acknowledging the alert object itself stops the next round."""
        alert = make_alert()
        manager.start(alert)
        await scheduler.advance(5 * MINUTE)

        alert.acknowledged = True
        await scheduler.advance(10 * MINUTE)
        assert len(channel.alerts) == 1
        assert manager.active() == []

    @pytest.mark.asyncio
    async def test_acknowledge_by_id(self, manager, scheduler, channel):
        """acknowledge cancels the pending round."""
        manager.start(make_alert(alert_id="alert_x"))
        assert manager.acknowledge("alert_x") is True
        assert manager.acknowledge("alert_x") is False
        assert scheduler.pending_timers == 0

        await scheduler.advance(60 * MINUTE)
        assert channel.alerts == []

    @pytest.mark.asyncio
    async def test_same_key_replaces_running_escalation(self, manager, scheduler, channel):
        """A newer alert of the same type and severity restarts the escalation."""
        manager.start(make_alert(alert_id="old"))
        await scheduler.advance(4 * MINUTE)
        manager.start(make_alert(alert_id="new"))

        await scheduler.advance(MINUTE)
        assert channel.alerts == []

        await scheduler.advance(4 * MINUTE)
        assert [a.id for a in channel.alerts] == ["new"]
        assert scheduler.pending_timers == 1

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_stop_others(self, scheduler, channel):
        """A raising channel counts as undelivered; the others still get the alert."""
        manager = EscalationManager(
            EscalationConfig(interval_ms=MINUTE),
            scheduler=scheduler,
            channels=[BrokenChannel(), channel],
        )
        manager.start(make_alert())
        await scheduler.advance(MINUTE)

        attempt = manager.get("custom_high").attempts[0]
        assert attempt.results == {"BrokenChannel": False, "CollectingChannel": True}
        assert len(channel.alerts) == 1

    @pytest.mark.asyncio
    async def test_stop_cancels_everything(self, manager, scheduler):
        """stop cancels every pending round."""
        manager.start(make_alert(alert_type="a"))
        manager.start(make_alert(alert_type="b"))
        assert len(manager.active()) == 2

        manager.stop()
        assert manager.active() == []
        assert scheduler.pending_timers == 0


class TestDispatcherWiring:
    """Tests for escalation driven by an alert dispatcher and the bus."""

    @pytest.mark.asyncio
    async def test_dispatcher_acknowledgement_stops_escalation(self, manager, scheduler, bus, channel):
        """Acknowledging through the dispatcher publishes an event that ends the escalation."""
        dispatcher = AlertDispatcher(clock=scheduler.now_ms, bus=bus)
        dispatcher.register_handler("*", manager.start)
        bus.subscribe(AlertAcknowledgedEvent, lambda event: manager.acknowledge(event.alert_id))

        alert = dispatcher.trigger("custom", severity=AlertSeverity.CRITICAL)
        assert manager.get("custom_critical") is not None

        await scheduler.advance(5 * MINUTE)
        assert len(channel.alerts) == 1

        dispatcher.acknowledge(alert.id)
        assert manager.active() == []

    def test_active_report(self, manager):
        """active lists running escalations as plain dicts."""
        manager.start(make_alert(alert_id="alert_r"))
        (entry,) = manager.active()
        assert entry["alert_id"] == "alert_r"
        assert entry["severity"] == "high"
        assert entry["level"] == 0
        assert entry["attempts"] == []
