import asyncio, base64, hashlib, logging, socket, pytest, websockets

from obs_mock_server import MockOBSServer, wait_until
from ylm_config import ObsAction, OBSSettings
from ylm_obs_session import (
    OBSControllerSession, OBSConfigurationError, OBSProtocolError, SessionState,
    build_identify, compute_auth_response
)


def make_session(logger, port, password="", **kwargs):
    return OBSControllerSession(OBSSettings("127.0.0.1", port, password), logger, **kwargs)


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_auth_response_matches_two_stage_sha256():
    password, salt, challenge = "supersecret", "lM1GncleQOaCu9lT1yeUZhFYnqhsLLP1G5lAGo3ixaI=", "+IxH4CnCiqpX1rM9scsNynZzbOe4KhDeYcTNS3PDaeY="
    secret = base64.b64encode(hashlib.sha256((password + salt).encode()).digest()).decode()
    expected = base64.b64encode(hashlib.sha256((secret + challenge).encode()).digest()).decode()
    assert compute_auth_response(password, salt, challenge) == expected


def test_identify_without_challenge_has_no_authentication():
    identify = build_identify({"obsWebSocketVersion": "5.0.0", "rpcVersion": 1}, "ignored")
    assert identify["op"] == 1
    assert "authentication" not in identify["d"]
    assert identify["d"]["rpcVersion"] == 1


def test_identify_with_malformed_challenge_is_protocol_error():
    with pytest.raises(OBSProtocolError):
        build_identify({"authentication": {"challenge": "only-half"}}, "pw")


@pytest.mark.asyncio
async def test_handshake_without_auth_reaches_identified(logger):
    async with MockOBSServer() as server:
        session = make_session(logger, server.port)
        await session.ensure_connected()

        assert session.state == SessionState.IDENTIFIED
        assert session.keepalive_running
        identify = server.messages(1)[0]["d"]
        assert "authentication" not in identify

        await session.close()
        assert session.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_handshake_with_challenge_authenticates(logger):
    async with MockOBSServer(password="changeme", salt="s4lt", challenge="ch4llenge") as server:
        session = make_session(logger, server.port, password="changeme")
        await session.ensure_connected()

        assert session.state == SessionState.IDENTIFIED
        sent = server.messages(1)[0]["d"]["authentication"]
        assert sent == compute_auth_response("changeme", "s4lt", "ch4llenge")
        await session.close()


@pytest.mark.asyncio
async def test_wrong_password_closes_without_raising(logger):
    async with MockOBSServer(password="changeme") as server:
        session = make_session(logger, server.port, password="wrong")
        await session.ensure_connected()
        assert session.state == SessionState.DISCONNECTED
        assert not session.keepalive_running


@pytest.mark.asyncio
async def test_ensure_connected_is_idempotent(logger):
    async with MockOBSServer() as server:
        session = make_session(logger, server.port)
        await session.ensure_connected()
        await session.ensure_connected()

        assert server.connections == 1
        assert session.connect_count == 1
        await session.close()


@pytest.mark.asyncio
async def test_peer_close_resets_state_and_cancels_keepalive_once(logger, caplog):
    async with MockOBSServer() as server:
        session = make_session(logger, server.port, keepalive_interval=30)
        await session.ensure_connected()
        keepalive = session._keepalive_task

        with caplog.at_level(logging.DEBUG, logger="YLM-Test"):
            await server.drop_clients()
            assert await wait_until(lambda: session.state == SessionState.DISCONNECTED)
            assert await wait_until(keepalive.done)

        assert keepalive.cancelled()
        assert not session.keepalive_running
        assert session._stop_keepalive() is False
        assert [r.message for r in caplog.records].count("Keepalive stopped") == 1

        # Lazy reconnect on next need
        await session.ensure_connected()
        assert session.state == SessionState.IDENTIFIED
        assert server.connections == 2
        await session.close()


@pytest.mark.asyncio
async def test_keepalive_sends_pings_while_identified(logger):
    async with MockOBSServer() as server:
        session = make_session(logger, server.port, keepalive_interval=0.05)
        await session.ensure_connected()
        assert await wait_until(lambda: len(server.messages(9)) >= 2)
        assert server.messages(9)[0]["d"] == {"eventType": "Ping"}
        await session.close()


@pytest.mark.asyncio
async def test_missing_host_or_port_is_configuration_error(logger):
    session = OBSControllerSession(OBSSettings("", None, ""), logger)
    with pytest.raises(OBSConfigurationError):
        await session.ensure_connected()

    # start_action reports it through the log instead
    await session.start_action(ObsAction.STREAM)
    assert session.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_connection_refused_is_soft(logger):
    session = make_session(logger, free_port())
    await session.ensure_connected()
    assert session.state == SessionState.DISCONNECTED
    await session.start_action(ObsAction.RECORD)
    assert session.pending == {}


@pytest.mark.asyncio
async def test_peer_closing_before_identified_resolves_without_error(logger):
    async with MockOBSServer(close_on_identify=True) as server:
        session = make_session(logger, server.port)
        await session.ensure_connected()
        assert session.state == SessionState.DISCONNECTED
        assert server.connections == 1


@pytest.mark.asyncio
async def test_identify_timeout_drops_silent_server(logger):
    async with MockOBSServer(send_identified=False) as server:
        session = make_session(logger, server.port, identify_timeout=0.2)
        await session.ensure_connected()
        assert session.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_malformed_hello_rejects_connect(logger):
    hello = {"op": 0, "d": {"rpcVersion": 1, "authentication": {"salt": "only-salt"}}}
    async with MockOBSServer(hello=hello) as server:
        session = make_session(logger, server.port)
        with pytest.raises(OBSProtocolError):
            await session.ensure_connected()
        assert session.state == SessionState.DISCONNECTED


@pytest.mark.asyncio
async def test_start_action_sends_request_and_reports_response(logger):
    async with MockOBSServer() as server:
        session = make_session(logger, server.port)
        results = []
        session.add_response_listener(results.append)

        await session.start_action(ObsAction.STREAM)
        assert await wait_until(lambda: len(results) == 1)

        request = server.messages(6)[0]["d"]
        assert request["requestType"] == "StartStream"
        assert request["requestId"].startswith("startstream_")
        assert results[0].request_type == "StartStream"
        assert results[0].request_id == request["requestId"]
        assert results[0].result is True
        assert session.pending == {}

        await session.start_action(ObsAction.RECORD)
        assert await wait_until(lambda: len(results) == 2)
        assert server.request_types() == ["StartStream", "StartRecord"]
        await session.close()


@pytest.mark.asyncio
async def test_start_action_none_sends_nothing(logger):
    async with MockOBSServer() as server:
        session = make_session(logger, server.port)
        await session.start_action(ObsAction.NONE)
        assert server.connections == 0


@pytest.mark.asyncio
async def test_unanswered_requests_are_dropped_on_close(logger):
    async with MockOBSServer(respond=False) as server:
        session = make_session(logger, server.port)
        await session.start_action(ObsAction.STREAM)
        assert len(session.pending) == 1

        await server.drop_clients()
        assert await wait_until(lambda: session.state == SessionState.DISCONNECTED)
        assert session.pending == {}


@pytest.mark.asyncio
async def test_stop_all_sends_both_stops(logger):
    async with MockOBSServer() as server:
        session = make_session(logger, server.port)
        await session.stop_all()
        assert await wait_until(lambda: len(server.messages(6)) == 2)
        assert server.request_types() == ["StopStream", "StopRecord"]
        assert session._stopping is False
        await session.close()


@pytest.mark.asyncio
async def test_stop_all_is_single_flight(logger):
    async with MockOBSServer() as server:
        session = make_session(logger, server.port)
        await asyncio.gather(session.stop_all(), session.stop_all())

        assert await wait_until(lambda: len(server.messages(6)) >= 2)
        await asyncio.sleep(0.05)
        assert server.request_types() == ["StopStream", "StopRecord"]
        assert server.connections == 1
        assert session._stopping is False
        await session.close()


@pytest.mark.asyncio
async def test_cancelled_connect_leaves_session_reusable(logger):
    async def hanging_connector(url, **kwargs):
        await asyncio.Event().wait()

    async with MockOBSServer() as server:
        session = make_session(logger, server.port, connector=hanging_connector)
        task = asyncio.create_task(session.ensure_connected())
        assert await wait_until(lambda: session.state == SessionState.CONNECTING)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert session.state == SessionState.DISCONNECTED
        assert session._connect_future.done()

        session.connector = websockets.connect
        await session.ensure_connected()
        assert session.state == SessionState.IDENTIFIED
        await session.close()


@pytest.mark.asyncio
async def test_changed_settings_close_open_session(logger):
    async with MockOBSServer() as server:
        session = make_session(logger, server.port)
        await session.ensure_connected()

        await session.update_settings(OBSSettings("127.0.0.1", server.port, "new-password"))
        assert session.state == SessionState.DISCONNECTED
        assert session.settings.password == "new-password"
