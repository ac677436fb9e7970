import asyncio
import json

from relay import protocol
from relay.gateway import ObserverGateway
from relay.registry import DeviceRegistry
from relay.router import MessageRouter


class FakeTransport:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    async def send_text(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(data))

    def of_type(self, msg_type):
        return [m for m in self.sent if m["type"] == msg_type]


class FakeAgentSession:
    def __init__(self, name="127.0.0.1:5000"):
        self.id = name
        self.device_id = None
        self.device_ids = set()
        self.connected = True
        self.sent = []

    def send(self, msg):
        self.sent.append(msg)


def make_router():
    registry = DeviceRegistry()
    gateway = ObserverGateway(registry)
    return registry, gateway, MessageRouter(registry, gateway)


def device_info(device_id, **extra):
    return protocol.device_info_message({"id": device_id, "deviceName": f"host-{device_id}", **extra})


def test_each_device_info_broadcasts_a_cumulative_snapshot():
    async def scenario():
        registry, gateway, router = make_router()
        observer = FakeTransport()
        await gateway.connect(observer)
        for n in range(3):
            await router.handle_agent_message(FakeAgentSession(f"peer{n}"), device_info(f"dev{n}"))
        return observer

    observer = asyncio.run(scenario())
    updates = observer.of_type(protocol.DEVICE_LIST_UPDATED)
    # one snapshot on connect, then one per device_info
    assert len(updates) == 4
    assert updates[0]["devices"] == []
    assert [[d["id"] for d in u["devices"]] for u in updates[1:]] == [
        ["dev0"],
        ["dev0", "dev1"],
        ["dev0", "dev1", "dev2"],
    ]
    assert updates[-1]["devices"][0]["deviceName"] == "host-dev0"


def test_refreshed_device_info_updates_metadata():
    async def scenario():
        registry, gateway, router = make_router()
        session = FakeAgentSession()
        await router.handle_agent_message(session, device_info("dev1", version="1"))
        await router.handle_agent_message(session, device_info("dev1", version="2"))
        return registry

    registry = asyncio.run(scenario())
    assert registry.snapshot() == [{"id": "dev1", "deviceName": "host-dev1", "version": "2"}]


def test_device_without_id_gets_generated_one():
    async def scenario():
        registry, gateway, router = make_router()
        session = FakeAgentSession()
        await router.handle_agent_message(session, protocol.device_info_message({"deviceName": "anon"}))
        return registry, session

    registry, session = asyncio.run(scenario())
    assert session.device_id.startswith("device-")
    assert session.device_id in registry


def test_log_fans_out_only_to_observers_of_that_device():
    async def scenario():
        registry, gateway, router = make_router()
        a, b, c = FakeTransport(), FakeTransport(), FakeTransport()
        watching_a = await gateway.connect(a)
        watching_b = await gateway.connect(b)
        await gateway.connect(c)
        dev_a, dev_b = FakeAgentSession("peerA"), FakeAgentSession("peerB")
        await router.handle_agent_message(dev_a, device_info("A"))
        await router.handle_agent_message(dev_b, device_info("B"))
        await gateway.receive(watching_a, json.dumps({"type": "select_device", "deviceId": "A"}))
        await gateway.receive(watching_b, json.dumps({"type": "select_device", "deviceId": "B"}))
        await router.handle_agent_message(dev_a, protocol.log_message("Log", "hello from A", timestamp="t"))
        return a, b, c

    a, b, c = asyncio.run(scenario())
    assert a.of_type(protocol.LOG) == [{
        "type": "log",
        "deviceId": "A",
        "data": {"type": "Log", "message": "hello from A", "stackTrace": "", "timestamp": "t"},
    }]
    assert b.of_type(protocol.LOG) == []
    assert c.of_type(protocol.LOG) == []


def test_log_data_is_normalized():
    data = protocol.normalize_log_data({"message": 42})
    assert data["type"] == "Log"
    assert data["message"] == "42"
    assert data["stackTrace"] == ""
    assert data["timestamp"]


def test_log_before_device_info_is_ignored():
    async def scenario():
        registry, gateway, router = make_router()
        observer = FakeTransport()
        session = await gateway.connect(observer)
        session.current_device = None
        await router.handle_agent_message(FakeAgentSession(), protocol.log_message("Log", "early"))
        return observer

    assert asyncio.run(scenario()).of_type(protocol.LOG) == []


def test_execute_code_goes_to_selected_device():
    async def scenario():
        registry, gateway, router = make_router()
        dev1, dev2 = FakeAgentSession("p1"), FakeAgentSession("p2")
        await router.handle_agent_message(dev1, device_info("dev1"))
        await router.handle_agent_message(dev2, device_info("dev2"))
        session = await gateway.connect(FakeTransport())
        await gateway.receive(session, json.dumps({"type": "select_device", "deviceId": "dev1"}))
        await gateway.receive(session, json.dumps(
            {"type": "execute_code", "deviceId": "dev1", "code": "return 1+1;"}))
        return dev1, dev2

    dev1, dev2 = asyncio.run(scenario())
    assert dev1.sent == [{"type": "execute_code", "data": {"code": "return 1+1;"}}]
    assert dev2.sent == []


def test_execute_code_without_connected_device_is_dropped():
    async def scenario():
        registry, gateway, router = make_router()
        observer = FakeTransport()
        session = await gateway.connect(observer)
        assert router.route_execute(session, "return 1") is False

        session.current_device = "ghost"
        assert router.route_execute(session, "return 1") is False

        dev = FakeAgentSession()
        await router.handle_agent_message(dev, device_info("dev1"))
        dev.connected = False
        session.current_device = "dev1"
        assert router.route_execute(session, "return 1") is False
        return observer, dev

    observer, dev = asyncio.run(scenario())
    assert dev.sent == []
    assert [m["type"] for m in observer.sent] == [protocol.DEVICE_LIST_UPDATED] * 2


def test_disconnect_removes_device_and_broadcasts():
    async def scenario():
        registry, gateway, router = make_router()
        observer = FakeTransport()
        await gateway.connect(observer)
        session = FakeAgentSession()
        await router.handle_agent_message(session, device_info("dev1"))
        await router.agent_disconnected(session)
        return registry, observer

    registry, observer = asyncio.run(scenario())
    assert len(registry) == 0
    assert observer.of_type(protocol.DEVICE_LIST_UPDATED)[-1]["devices"] == []


def test_late_close_of_old_session_keeps_reconnected_device():
    async def scenario():
        registry, gateway, router = make_router()
        old, new = FakeAgentSession("old"), FakeAgentSession("new")
        await router.handle_agent_message(old, device_info("dev1"))
        await router.handle_agent_message(new, device_info("dev1"))
        await router.agent_disconnected(old)
        return registry, new

    registry, new = asyncio.run(scenario())
    assert registry.get("dev1").session is new


def test_failed_observer_send_does_not_block_others():
    async def scenario():
        registry, gateway, router = make_router()
        broken, healthy = FakeTransport(fail=True), FakeTransport()
        await gateway.connect(broken)
        await gateway.connect(healthy)
        await router.handle_agent_message(FakeAgentSession(), device_info("dev1"))
        return healthy

    healthy = asyncio.run(scenario())
    assert len(healthy.of_type(protocol.DEVICE_LIST_UPDATED)) == 2


def test_gateway_ignores_garbage_and_tracks_sessions():
    async def scenario():
        registry, gateway, router = make_router()
        session = await gateway.connect(FakeTransport())
        await gateway.receive(session, "not json")
        await gateway.receive(session, "[1, 2]")
        await gateway.receive(session, json.dumps({"type": "mystery"}))
        assert len(gateway) == 1
        gateway.disconnect(session)
        return gateway, session

    gateway, session = asyncio.run(scenario())
    assert len(gateway) == 0
    assert session.current_device is None


def test_one_session_announcing_several_ids_is_cumulative():
    async def scenario():
        registry, gateway, router = make_router()
        observer = FakeTransport()
        await gateway.connect(observer)
        session = FakeAgentSession()
        for n in range(3):
            await router.handle_agent_message(session, device_info(f"dev{n}"))
        snapshots = [[d["id"] for d in u["devices"]]
                     for u in observer.of_type(protocol.DEVICE_LIST_UPDATED)[1:]]
        await router.agent_disconnected(session)
        return registry, observer, snapshots, session

    registry, observer, snapshots, session = asyncio.run(scenario())
    assert snapshots == [["dev0"], ["dev0", "dev1"], ["dev0", "dev1", "dev2"]]
    assert session.device_id == "dev2"
    # closing the session clears every id it announced
    assert len(registry) == 0
    assert observer.of_type(protocol.DEVICE_LIST_UPDATED)[-1]["devices"] == []
