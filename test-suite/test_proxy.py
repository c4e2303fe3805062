#!/usr/bin/env python3
import asyncio
import importlib.util
import io
import pathlib
import sys
import unittest


ROOT = pathlib.Path(__file__).resolve().parents[1]
MODULE_PATH = ROOT / "ruleproxy.py"


def _load_ruleproxy():
    if "ruleproxy" in sys.modules:
        return sys.modules["ruleproxy"]
    spec = importlib.util.spec_from_file_location("ruleproxy", MODULE_PATH)
    if spec is None or spec.loader is None:
        raise RuntimeError(f"cannot load module from {MODULE_PATH}")
    mod = importlib.util.module_from_spec(spec)
    sys.modules[spec.name] = mod
    spec.loader.exec_module(mod)
    return mod


RP = _load_ruleproxy()


class _CountingTCPProxy(RP.TCPProxy):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.close_calls = 0

    def close(self):
        self.close_calls += 1
        super().close()


def _rules(*entries):
    cfg = RP.RulesConfig()
    for rule_class, scope, value in entries:
        cfg.add(rule_class, scope, value)
    return RP.build_rule_set(cfg)


async def _wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestTcpProxy(unittest.IsolatedAsyncioTestCase):
    async def _start(self, handle, rules, proxy_cls=RP.TCPProxy):
        srv = await asyncio.start_server(handle, host="127.0.0.1", port=0)
        up_port = srv.sockets[0].getsockname()[1]
        out = io.BytesIO()
        proxy = proxy_cls("127.0.0.1", 0, ("127.0.0.1", up_port), connect_timeout=2.0)
        RP.EventBinder(rules, RP.Presenter(out=out, color=False)).bind(proxy)
        await proxy.open()

        async def cleanup():
            await proxy.stop()
            srv.close()
            await srv.wait_closed()

        self.addAsyncCleanup(cleanup)
        return proxy, out

    async def test_client_rewrite_reaches_upstream(self):
        got = asyncio.get_running_loop().create_future()

        async def handle(reader, writer):
            try:
                got.set_result(await reader.readexactly(16))
            finally:
                writer.close()

        proxy, out = await self._start(handle, _rules((RP.REWRITE, RP.CLIENT, "GET:POST")))
        r, w = await asyncio.open_connection("127.0.0.1", proxy.port)
        w.write(b"GET /x HTTP/1.1")
        await w.drain()
        self.assertEqual(await asyncio.wait_for(got, 2.0), b"POST /x HTTP/1.1")

        # upstream hung up, so the proxy closes the client side too
        self.assertEqual(await asyncio.wait_for(r.read(), 2.0), b"")
        w.close()
        await w.wait_closed()

        text = out.getvalue()
        self.assertIn(b"[connecting]", text)
        self.assertIn(b"[connected]", text)
        self.assertIn(f" -> {proxy}\nPOST /x HTTP/1.1\n".encode(), text)
        self.assertNotIn(b"GET /x", text)

    async def test_both_scoped_close_on_server_data(self):
        async def handle(reader, writer):
            writer.write(b"QUIT now\n")
            await writer.drain()
            try:
                await reader.read()
            finally:
                writer.close()

        proxy, out = await self._start(handle, _rules((RP.CLOSE, RP.BOTH, "QUIT")), _CountingTCPProxy)
        r, w = await asyncio.open_connection("127.0.0.1", proxy.port)
        # the matched chunk is not forwarded and the connection is closed
        self.assertEqual(await asyncio.wait_for(r.read(), 2.0), b"")
        w.close()
        await w.wait_closed()

        self.assertEqual(proxy.close_calls, 1)
        text = out.getvalue()
        self.assertIn(f" <- {proxy}\nQUIT now\n".encode(), text)
        await _wait_until(lambda: b"[disconnecting]" in out.getvalue())

    async def test_ignored_chunk_is_dropped(self):
        got = asyncio.Queue()

        async def handle(reader, writer):
            try:
                while True:
                    data = await reader.read(100)
                    if not data:
                        break
                    await got.put(data)
            finally:
                writer.close()

        proxy, out = await self._start(handle, _rules((RP.IGNORE, RP.CLIENT, "noise")))
        r, w = await asyncio.open_connection("127.0.0.1", proxy.port)
        w.write(b"noise")
        await w.drain()
        await _wait_until(lambda: b"noise" in out.getvalue())
        w.write(b"signal")
        await w.drain()
        self.assertEqual(await asyncio.wait_for(got.get(), 2.0), b"signal")
        w.close()
        await w.wait_closed()

    async def test_reset_reconnects_upstream(self):
        conns = []
        got = asyncio.Queue()

        async def handle(reader, writer):
            conns.append(writer)
            try:
                while True:
                    data = await reader.read(100)
                    if not data:
                        break
                    await got.put(data)
            finally:
                writer.close()

        proxy, out = await self._start(handle, _rules((RP.RESET, RP.CLIENT, "RST")))
        r, w = await asyncio.open_connection("127.0.0.1", proxy.port)
        await _wait_until(lambda: len(conns) == 1)
        w.write(b"RST")
        await w.drain()
        await _wait_until(lambda: len(conns) == 2)

        w.write(b"hello")
        await w.drain()
        self.assertEqual(await asyncio.wait_for(got.get(), 2.0), b"hello")
        self.assertTrue(got.empty())
        w.close()
        await w.wait_closed()

        text = out.getvalue()
        self.assertEqual(text.count(b"[connected]"), 2)
        self.assertEqual(text.count(b"[disconnected]"), 1)

    async def test_upstream_unreachable(self):
        async def handle(reader, writer):
            writer.close()

        proxy, out = await self._start(handle, RP.RuleSet())
        proxy.server_port = 1  # nothing listens there
        with self.assertLogs("ruleproxy", level="WARNING"):
            r, w = await asyncio.open_connection("127.0.0.1", proxy.port)
            self.assertEqual(await asyncio.wait_for(r.read(), 2.0), b"")
        w.close()
        await w.wait_closed()
        self.assertIn(b"[disconnecting]", out.getvalue())


class _Collector(asyncio.DatagramProtocol):
    def __init__(self):
        self.queue = asyncio.Queue()

    def datagram_received(self, data, addr):
        self.queue.put_nowait(data)


class _Echo(asyncio.DatagramProtocol):
    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.transport.sendto(data, addr)


class TestUdpProxy(unittest.IsolatedAsyncioTestCase):
    async def test_rewrite_and_ignore(self):
        loop = asyncio.get_running_loop()
        echo, _ = await loop.create_datagram_endpoint(_Echo, local_addr=("127.0.0.1", 0))
        self.addCleanup(echo.close)
        up_port = echo.get_extra_info("sockname")[1]

        out = io.BytesIO()
        proxy = RP.UDPProxy("127.0.0.1", 0, ("127.0.0.1", up_port), idle_timeout=5.0)
        rules = _rules((RP.REWRITE, RP.CLIENT, "ping:pong"), (RP.IGNORE, RP.CLIENT, "drop"))
        plan = RP.EventBinder(rules, RP.Presenter(out=out, color=False)).bind(proxy)
        self.assertEqual(set(plan), {RP.CLIENT_DATA, RP.SERVER_DATA})
        await proxy.open()
        self.addAsyncCleanup(proxy.stop)

        client, collector = await loop.create_datagram_endpoint(
            _Collector, remote_addr=("127.0.0.1", proxy.port)
        )
        self.addCleanup(client.close)
        client_port = client.get_extra_info("sockname")[1]

        client.sendto(b"drop me")
        client.sendto(b"ping")
        self.assertEqual(await asyncio.wait_for(collector.queue.get(), 2.0), b"pong")
        self.assertTrue(collector.queue.empty())

        text = out.getvalue()
        self.assertIn(f"127.0.0.1:{client_port} -> {proxy}\ndrop me\n".encode(), text)
        self.assertIn(f"127.0.0.1:{client_port} <- {proxy}\npong\n".encode(), text)
        self.assertNotIn(b"[connecting]", text)

    async def _start(self, rules, idle_timeout=5.0):
        loop = asyncio.get_running_loop()
        echo, _ = await loop.create_datagram_endpoint(_Echo, local_addr=("127.0.0.1", 0))
        self.addCleanup(echo.close)
        up_port = echo.get_extra_info("sockname")[1]

        proxy = RP.UDPProxy("127.0.0.1", 0, ("127.0.0.1", up_port), idle_timeout=idle_timeout)
        RP.EventBinder(rules, RP.Presenter(out=io.BytesIO(), color=False)).bind(proxy)
        await proxy.open()
        self.addAsyncCleanup(proxy.stop)

        client, collector = await loop.create_datagram_endpoint(
            _Collector, remote_addr=("127.0.0.1", proxy.port)
        )
        self.addCleanup(client.close)
        peer = ("127.0.0.1", client.get_extra_info("sockname")[1])
        return proxy, client, collector, peer

    async def test_close_tears_session_down(self):
        proxy, client, collector, peer = await self._start(_rules((RP.CLOSE, RP.CLIENT, "bye")))

        client.sendto(b"hello")
        self.assertEqual(await asyncio.wait_for(collector.queue.get(), 2.0), b"hello")
        first = proxy._sessions[peer]

        client.sendto(b"bye")
        await _wait_until(lambda: peer not in proxy._sessions)
        self.assertIsNone(first.upstream)

        # the next datagram from the same peer opens a fresh session
        client.sendto(b"again")
        self.assertEqual(await asyncio.wait_for(collector.queue.get(), 2.0), b"again")
        self.assertIsNot(proxy._sessions[peer], first)
        self.assertTrue(collector.queue.empty())

    async def test_reset_replaces_upstream_endpoint(self):
        proxy, client, collector, peer = await self._start(_rules((RP.RESET, RP.CLIENT, "RST")))

        client.sendto(b"one")
        self.assertEqual(await asyncio.wait_for(collector.queue.get(), 2.0), b"one")
        session = proxy._sessions[peer]
        upstream = session.upstream
        self.assertIsNotNone(upstream)

        client.sendto(b"RST")
        client.sendto(b"two")
        self.assertEqual(await asyncio.wait_for(collector.queue.get(), 2.0), b"two")
        self.assertIs(proxy._sessions[peer], session)
        self.assertIsNotNone(session.upstream)
        self.assertIsNot(session.upstream, upstream)
        self.assertTrue(upstream.is_closing())
        self.assertTrue(collector.queue.empty())

    async def test_idle_session_expires(self):
        proxy, client, collector, peer = await self._start(RP.RuleSet(), idle_timeout=0.2)

        client.sendto(b"x")
        self.assertEqual(await asyncio.wait_for(collector.queue.get(), 2.0), b"x")
        self.assertIn(peer, proxy._sessions)
        session = proxy._sessions[peer]

        await _wait_until(lambda: peer not in proxy._sessions)
        self.assertIsNone(session.upstream)


if __name__ == "__main__":
    unittest.main()
