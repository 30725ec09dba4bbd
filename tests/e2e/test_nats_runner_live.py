import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

import nats
import pytest

from nats_runner import (
    EventRecorder,
    RequestError,
    RunConfig,
    ScenarioEngine,
    ScenarioSpec,
)

NATS_URL = os.getenv("NATS_URL")

pytestmark = pytest.mark.skipif(not NATS_URL, reason="set NATS_URL to run against a live broker")


async def start_responder(subject: str):
    nc = await nats.connect(servers=[NATS_URL])

    async def handle(msg):
        await msg.respond(b'{"echo": "' + msg.data + b'", "id": 11}')

    await nc.subscribe(subject, cb=handle)
    await nc.flush()
    return nc


@pytest.mark.asyncio
async def test_pub_and_req_against_live_broker():
    responder = await start_responder("e2e.echo")
    try:
        engine = ScenarioEngine(RunConfig(server=NATS_URL))
        spec = ScenarioSpec(flow=[
            {"pub": {"subject": "e2e.events", "payload": {"a": 1}}},
            {"req": {"subject": "e2e.echo", "payload": "ping", "timeout": 2000, "capture": {"rid": "body.id"}}},
            {"log": "got {{rid}}"},
        ])
        events = EventRecorder()
        result = await engine.run(spec, events)

        assert result.ok, result.error
        assert result.context.vars["rid"] == 11
        assert events.names() == ["started", "request", "response", "request", "response"]
        assert result.context.connection.is_closed
    finally:
        await responder.close()


@pytest.mark.asyncio
async def test_req_without_replier_fails():
    engine = ScenarioEngine(RunConfig(server=NATS_URL))
    spec = ScenarioSpec(flow=[{"req": {"subject": "e2e.nobody.home", "payload": "ping", "timeout": 100}}])
    events = EventRecorder()

    result = await engine.run(spec, events)

    # No responders or a timeout, depending on the server version
    assert isinstance(result.error, RequestError)
    assert events.count("error") == 1
    assert events.count("response") == 0
