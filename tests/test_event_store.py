"""
Tests for the alert/audit store and its persistence backends
"""
import json

import pytest

from aiedr.services.base import ConfigurationError, EngineSettings
from aiedr.services.event_store import AlertAuditStore
from aiedr.services.persistence import (
    InMemoryPersistence,
    JsonFilePersistence,
    PersistedState,
    RedisPersistence,
    build_persistence,
)
from aiedr.services.threat_types import (
    AlertSource,
    AlertType,
    AuditEntry,
    AuditEventType,
    SecurityAlert,
    ThreatLevel,
)


def _alert(severity: ThreatLevel = ThreatLevel.HIGH, message: str = "alert") -> SecurityAlert:
    return SecurityAlert(
        type=AlertType.JAILBREAK_ATTEMPT,
        severity=severity,
        message=message,
        source=AlertSource.USER_PROMPT,
        matched_patterns=["Jailbreak Keyword"],
        affected_content="jailbreak",
    )


def _entry(description: str) -> AuditEntry:
    return AuditEntry(event_type=AuditEventType.MESSAGE_SENT, description=description)


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.pending = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def set(self, key, value):
        self.pending[key] = value

    async def execute(self):
        self.store.update(self.pending)
        return [True] * len(self.pending)


class FakeRedis:
    """Just enough of redis.asyncio.Redis for RedisPersistence."""

    def __init__(self, fail: bool = False):
        self.store = {}
        self.fail = fail
        self.closed = False

    async def ping(self):
        return True

    async def mget(self, *keys):
        if self.fail:
            raise ConnectionError("redis down")
        return [self.store.get(k) for k in keys]

    def pipeline(self, transaction=True):
        if self.fail:
            raise ConnectionError("redis down")
        return FakePipeline(self.store)

    async def aclose(self):
        self.closed = True


@pytest.fixture
def store():
    return AlertAuditStore(max_audit_entries=100)


class TestAlerts:
    """Alert list behaviour"""

    def test_newest_first(self, store):
        first, second = _alert(message="first"), _alert(message="second")
        store.add_alerts([first, second])

        assert [a.message for a in store.alerts()] == ["second", "first"]
        assert store.total_threats_detected == 2

    def test_returned_alerts_are_copies(self, store):
        alert = _alert()
        store.add_alerts([alert])

        copy = store.alerts()[0]
        copy.is_acknowledged = True
        copy.matched_patterns.append("tampered")

        stored = store.get_alert(alert.id)
        assert stored.is_acknowledged is False
        assert stored.matched_patterns == ["Jailbreak Keyword"]

    def test_acknowledge_is_idempotent_and_audited_once(self, store):
        alert = _alert()
        store.add_alerts([alert])

        assert store.acknowledge(alert.id) is True
        assert store.acknowledge(alert.id) is True

        acks = [e for e in store.audit_log() if e.event_type == AuditEventType.ALERT_ACKNOWLEDGED]
        assert len(acks) == 1
        assert acks[0].metadata["alert_id"] == alert.id
        assert store.active_alerts() == []

    def test_acknowledge_unknown(self, store):
        assert store.acknowledge("missing") is False
        assert store.audit_log() == []

    def test_threat_level_ignores_acknowledged(self, store):
        critical, elevated = _alert(ThreatLevel.CRITICAL), _alert(ThreatLevel.ELEVATED)
        store.add_alerts([critical, elevated])
        assert store.current_threat_level() == ThreatLevel.CRITICAL

        store.acknowledge(critical.id)
        assert store.current_threat_level() == ThreatLevel.ELEVATED

        store.acknowledge(elevated.id)
        assert store.current_threat_level() == ThreatLevel.NORMAL

    def test_clear_alert(self, store):
        alert = _alert()
        store.add_alerts([alert])

        assert store.clear_alert("missing") is False
        assert store.clear_alert(alert.id) is True
        assert store.alerts() == []

    def test_clear_acknowledged(self, store):
        kept, acked = _alert(message="kept"), _alert(message="acked")
        store.add_alerts([kept, acked])
        store.acknowledge(acked.id)

        assert store.clear_acknowledged_alerts() == 1
        assert [a.message for a in store.alerts()] == ["kept"]

    def test_mark_mitigated_counts_once(self, store):
        alerts = [_alert(), _alert()]
        store.add_alerts(alerts)
        ids = [a.id for a in alerts]

        assert store.mark_mitigated(ids + ["missing"]) == 2
        assert store.mark_mitigated(ids) == 0
        assert all(a.mitigation_applied for a in store.alerts())


class TestAuditLog:
    """Audit log behaviour"""

    def test_capacity_drops_oldest(self):
        store = AlertAuditStore(max_audit_entries=3)
        for i in range(5):
            store.add_audit_entry(_entry(f"entry {i}"))

        assert [e.description for e in store.audit_log()] == ["entry 4", "entry 3", "entry 2"]

    def test_shrinking_capacity_trims(self, store):
        for i in range(10):
            store.add_audit_entry(_entry(f"entry {i}"))
        store.set_max_audit_entries(4)
        assert len(store.audit_log()) == 4

    def test_limit(self, store):
        for i in range(10):
            store.add_audit_entry(_entry(f"entry {i}"))
        assert [e.description for e in store.audit_log(limit=2)] == ["entry 9", "entry 8"]

    def test_export_then_export_again(self, store):
        store.add_audit_entry(_entry("hello"))

        first = json.loads(store.export_audit_log())
        assert [e["event_type"] for e in first] == ["message_sent"]

        second = json.loads(store.export_audit_log())
        assert [e["event_type"] for e in second] == ["export_requested", "message_sent"]
        assert second[0]["metadata"] == {"entry_count": "1"}

    def test_export_is_stable(self, store):
        store.add_audit_entry(_entry("hello"))
        text = store.export_audit_log()
        assert text.startswith("[\n  {")
        assert list(json.loads(text)[0]) == sorted(json.loads(text)[0])

    def test_clear(self, store):
        store.add_audit_entry(_entry("one"))
        store.add_audit_entry(_entry("two"))
        assert store.clear_audit_log() == 2
        assert store.audit_log() == []


class TestStorePersistence:
    """load / persist"""

    @pytest.mark.asyncio
    async def test_round_trip_through_memory_backend(self):
        backend = InMemoryPersistence()
        store = AlertAuditStore(persistence=backend)
        alert = _alert()
        store.add_alerts([alert])
        store.acknowledge(alert.id)
        store.record_blocked_threat(3)

        assert await store.persist() is True

        restored = AlertAuditStore(persistence=backend)
        assert await restored.load() is True
        assert restored.get_alert(alert.id).is_acknowledged is True
        assert restored.counters() == {"total_threats_detected": 1, "total_threats_blocked": 3}
        assert [e.event_type for e in restored.audit_log()] == [AuditEventType.ALERT_ACKNOWLEDGED]

    @pytest.mark.asyncio
    async def test_nothing_saved_yet(self):
        assert await AlertAuditStore(persistence=InMemoryPersistence()).load() is False
        assert await AlertAuditStore().load() is False
        assert await AlertAuditStore().persist() is False

    @pytest.mark.asyncio
    async def test_backend_failure_is_not_raised(self):
        class Exploding(InMemoryPersistence):
            async def save(self, state):
                raise RuntimeError("disk on fire")

        store = AlertAuditStore(persistence=Exploding())
        store.add_alerts([_alert()])
        assert await store.persist() is False
        assert len(store.alerts()) == 1

    @pytest.mark.asyncio
    async def test_restore_respects_capacity(self):
        backend = InMemoryPersistence()
        await backend.save(PersistedState(audit_log=[_entry(str(i)) for i in range(10)]))

        store = AlertAuditStore(max_audit_entries=3, persistence=backend)
        await store.load()
        assert len(store.audit_log()) == 3


class TestJsonFilePersistence:
    """JsonFilePersistence"""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        path = tmp_path / "state" / "aiedr.json"
        backend = JsonFilePersistence(str(path))
        alert = _alert(ThreatLevel.CRITICAL)

        assert await backend.save(PersistedState(alerts=[alert], total_threats_detected=1)) is True
        assert path.exists()
        assert not (tmp_path / "state" / "aiedr.json.tmp").exists()

        state = await backend.load()
        assert [a.id for a in state.alerts] == [alert.id]
        assert state.alerts[0].severity == ThreatLevel.CRITICAL
        assert state.alerts[0].timestamp == alert.timestamp
        assert state.total_threats_detected == 1

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        assert await JsonFilePersistence(str(tmp_path / "none.json")).load() is None

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        assert await JsonFilePersistence(str(path)).load() is None

        path.write_text(json.dumps({"alerts": [{"id": "x"}]}))
        assert await JsonFilePersistence(str(path)).load() is None


class TestRedisPersistence:
    """RedisPersistence against an in-memory fake"""

    @pytest.mark.asyncio
    async def test_round_trip(self):
        fake = FakeRedis()
        backend = RedisPersistence("redis://unused", client=fake)
        alert = _alert()

        assert await backend.save(PersistedState(alerts=[alert], total_threats_blocked=2)) is True
        assert set(fake.store) == {"aiedr:alerts", "aiedr:audit_log", "aiedr:counters"}

        state = await backend.load()
        assert [a.id for a in state.alerts] == [alert.id]
        assert state.total_threats_blocked == 2

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await RedisPersistence("redis://unused", client=FakeRedis()).load() is None

    @pytest.mark.asyncio
    async def test_failures_degrade(self):
        assert await RedisPersistence("redis://unused", client=FakeRedis(fail=True)).save(PersistedState()) is False
        assert await RedisPersistence("redis://unused", client=FakeRedis(fail=True)).load() is None

    @pytest.mark.asyncio
    async def test_corrupt_payload(self):
        fake = FakeRedis()
        fake.store["aiedr:alerts"] = "{broken"
        assert await RedisPersistence("redis://unused", client=fake).load() is None

    @pytest.mark.asyncio
    async def test_close(self):
        fake = FakeRedis()
        backend = RedisPersistence("redis://unused", client=fake)
        await backend.close()
        assert fake.closed is True


class TestBuildPersistence:
    """build_persistence"""

    def test_backends(self, tmp_path):
        assert isinstance(build_persistence(EngineSettings()), InMemoryPersistence)
        assert isinstance(build_persistence(EngineSettings(persistence_backend="redis")), RedisPersistence)
        file_backend = build_persistence(EngineSettings(persistence_backend="file", audit_log_path=str(tmp_path / "a.json")))
        assert isinstance(file_backend, JsonFilePersistence)

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            build_persistence(EngineSettings(persistence_backend="s3"))
