import logging
import sys
import threading

from agent.dispatcher import MainThreadDispatcher
from agent.logsink import LogBuffer, LogRecord, LogType, RemoteLogHandler


def _record(level, msg="m", exc_info=None):
    return logging.LogRecord("host", level, __file__, 1, msg, None, exc_info)


def test_log_type_from_level():
    assert LogType.from_record(_record(logging.DEBUG)) is LogType.LOG
    assert LogType.from_record(_record(logging.INFO)) is LogType.LOG
    assert LogType.from_record(_record(logging.WARNING)) is LogType.WARNING
    assert LogType.from_record(_record(logging.ERROR)) is LogType.ERROR
    assert LogType.from_record(_record(logging.CRITICAL)) is LogType.ERROR


def test_exception_records_carry_traceback():
    try:
        raise KeyError("gone")
    except KeyError:
        record = LogRecord.from_logging(_record(logging.ERROR, "failed", sys.exc_info()))
    assert record.type is LogType.EXCEPTION
    assert "KeyError" in record.stack_trace
    assert record.message == "failed"


def test_buffer_evicts_oldest_first():
    buffer = LogBuffer()
    for i in range(1005):
        buffer.append(LogRecord(LogType.LOG, f"msg {i}"))
    records = buffer.records()
    assert len(records) == 1000
    assert records[0].message == "msg 5"
    assert records[-1].message == "msg 1004"


def test_buffer_filter_by_type_and_search():
    buffer = LogBuffer()
    buffer.append(LogRecord(LogType.LOG, "Player spawned"))
    buffer.append(LogRecord(LogType.WARNING, "low fps"))
    buffer.append(LogRecord(LogType.ERROR, "boom", stack_trace="in Player.update"))

    assert [r.message for r in buffer.filter(types=[LogType.WARNING])] == ["low fps"]
    assert [r.message for r in buffer.filter(search="player")] == ["Player spawned", "boom"]
    assert [r.message for r in buffer.filter(search="player", include_stack=False)] == ["Player spawned"]


def test_handler_forwards_records_to_sink_and_buffer():
    sent = []
    buffer = LogBuffer()
    logger = logging.getLogger("test_logsink.forward")
    logger.propagate = False
    handler = RemoteLogHandler(sent.append, buffer=buffer)
    logger.addHandler(handler)
    try:
        logger.warning("careful %s", "now")
    finally:
        logger.removeHandler(handler)
    assert [(r.type, r.message) for r in sent] == [(LogType.WARNING, "careful now")]
    assert len(buffer) == 1


def test_handler_ignores_records_logged_by_its_own_sink():
    logger = logging.getLogger("test_logsink.reentrant")
    logger.propagate = False
    sent = []

    def sink(record):
        sent.append(record)
        logger.error("send failed")

    handler = RemoteLogHandler(sink)
    logger.addHandler(handler)
    try:
        logger.warning("first")
    finally:
        logger.removeHandler(handler)
    assert [r.message for r in sent] == ["first"]


def test_dispatcher_runs_tasks_on_draining_thread():
    dispatcher = MainThreadDispatcher()
    seen = []

    def producer(n):
        for i in range(50):
            dispatcher.enqueue(lambda i=i: seen.append((n, i, threading.current_thread().name)))

    threads = [threading.Thread(target=producer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(dispatcher) == 200
    assert dispatcher.drain() == 200
    assert len(dispatcher) == 0
    assert {name for _, _, name in seen} == {threading.current_thread().name}
    for n in range(4):
        assert [i for m, i, _ in seen if m == n] == list(range(50))


def test_dispatcher_keeps_draining_after_a_failure(caplog):
    dispatcher = MainThreadDispatcher()
    ran = []
    dispatcher.enqueue(lambda: 1 / 0)
    dispatcher.enqueue(lambda: ran.append("next"))
    with caplog.at_level(logging.ERROR):
        assert dispatcher.drain() == 2
    assert ran == ["next"]
    assert "Error executing queued action" in caplog.text
