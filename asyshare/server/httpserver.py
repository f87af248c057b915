import asyncio
import datetime
import email.utils
from itertools import count

import h11

from asyshare import logger
from asyshare._version import __version__
from asyshare.common.constants import RECV_SIZE, MAX_DRAIN


SERVER_IDENT = " ".join(
    [f"asyshare/{__version__}", h11.PRODUCT_ID]
).encode("ascii")


def format_date_time(dt=None):
    """Generate a RFC 7231 / RFC 9110 IMF-fixdate string"""
    if dt is None:
        dt = datetime.datetime.now(datetime.timezone.utc)
    return email.utils.format_datetime(dt, usegmt=True)


class HTTPConnectionWrapper:
    """Drives one h11 server state machine over an asyncio stream pair."""
    _next_id = count()

    def __init__(self, reader:asyncio.StreamReader, writer:asyncio.StreamWriter, log_callback=None):
        self.log_callback = log_callback
        self.MAX_RECV = RECV_SIZE
        self.reader = reader
        self.writer = writer
        self.conn = h11.Connection(h11.SERVER)
        # A unique id for this connection, to include in debugging output
        self.client_id = next(HTTPConnectionWrapper._next_id)
        self.peer = writer.get_extra_info('peername')

    async def debug(self, *args):
        if self.log_callback is not None:
            msg = ' '.join([str(x) for x in args])
            await self.log_callback('[%s] %s' % (self.client_id, msg))

    async def send(self, event):
        # ConnectionClosed is never sent by the handlers, closing goes through shutdown_and_clean_up
        assert type(event) is not h11.ConnectionClosed
        data = self.conn.send(event)
        try:
            self.writer.write(data)
            await self.writer.drain()
        except BaseException:
            # the peer is gone or we were cancelled, this connection is unusable
            self.conn.send_failed()
            raise

    async def _read_from_peer(self):
        if self.conn.they_are_waiting_for_100_continue:
            await self.debug("Sending 100 Continue")
            go_ahead = h11.InformationalResponse(
                status_code=100, headers=self.basic_headers()
            )
            await self.send(go_ahead)
        try:
            data = await self.reader.read(self.MAX_RECV)
        except ConnectionError as exc:
            await self.debug('Error reading from peer:', exc)
            # They've stopped talking to us, h11 turns this into an EOF
            data = b""
        self.conn.receive_data(data)

    async def next_event(self):
        while True:
            event = self.conn.next_event()
            if event is h11.NEED_DATA:
                await self._read_from_peer()
                continue
            return event

    @property
    def response_started(self):
        return self.conn.our_state is not h11.SEND_RESPONSE

    async def shutdown_and_clean_up(self):
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except Exception as exc:
            await self.debug('Error closing connection:', exc)

    def basic_headers(self):
        # HTTP requires these headers in all responses
        return [
            ("Date", format_date_time().encode("ascii")),
            ("Server", SERVER_IDENT),
        ]


class HTTPServerHandler:
    """
    Per-connection request handler. Subclasses implement do_<METHOD> coroutines
    which are responsible for sending the full response through self._wrapper.
    """
    def __init__(self):
        self._wrapper:HTTPConnectionWrapper = None

    def basic_headers(self):
        return self._wrapper.basic_headers()

    async def _process_request(self, wrapper:HTTPConnectionWrapper, request:h11.Request):
        self._wrapper = wrapper
        method = request.method.decode("ascii")
        func = getattr(self, f"do_{method}", None)
        if func is None:
            return await self.send_bytes(405, b"Method Not Allowed", "text/plain; charset=utf-8")
        await func(request)

    async def send_bytes(self, status_code:int, body:bytes, content_type:str, extra_headers=None):
        headers = self.basic_headers()
        headers.extend([
            ("Content-Type", content_type.encode("ascii")),
            ("Content-Length", str(len(body)).encode("ascii")),
        ])
        if extra_headers:
            headers.extend(extra_headers)
        await self._wrapper.send(h11.Response(status_code=status_code, headers=headers))
        await self._wrapper.send(h11.Data(data=body))
        await self._wrapper.send(h11.EndOfMessage())


class HTTPServer:
    def __init__(self, client_handler, host:str, port:int, ssl_ctx=None, log_callback=None):
        self.log_callback = log_callback
        self.host = host
        self.port = port
        self.client_handler = client_handler
        self.ssl_ctx = ssl_ctx

        self.server = None
        self.clients = set()
        self.started_evt = asyncio.Event()
        self.max_drain = MAX_DRAIN

    async def debug(self, *args):
        if self.log_callback is not None:
            msg = ' '.join([str(x) for x in args])
            await self.log_callback(msg)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.terminate()

    @property
    def bound_port(self):
        if self.server is None or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    async def terminate(self):
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
        for task in list(self.clients):
            task.cancel()
        if self.clients:
            await asyncio.gather(*self.clients, return_exceptions=True)
        self.clients = set()

    async def __handle_connection(self, reader, writer):
        task = asyncio.current_task()
        self.clients.add(task)
        wrapper = HTTPConnectionWrapper(reader, writer, log_callback=self.log_callback)
        handler = self.client_handler()
        await self.debug('Server: New client %s connected with id %s' % (wrapper.peer, wrapper.client_id))
        drained = 0
        try:
            while True:
                states = wrapper.conn.states
                if states == {h11.CLIENT: h11.DONE, h11.SERVER: h11.DONE}:
                    wrapper.conn.start_next_cycle()
                    drained = 0
                    continue

                if states[h11.CLIENT] is h11.SEND_BODY and states[h11.SERVER] in (h11.DONE, h11.MUST_CLOSE):
                    # answered before the body was read, drain a little so the client sees the response
                    event = await wrapper.next_event()
                    if type(event) is h11.Data:
                        drained += len(event.data)
                        if drained > self.max_drain:
                            break
                        continue
                    if type(event) is h11.EndOfMessage:
                        continue
                    break

                if states != {h11.CLIENT: h11.IDLE, h11.SERVER: h11.IDLE}:
                    await self.debug('[%s] Server: ending connection in state %s' % (wrapper.client_id, states))
                    break

                try:
                    event = await wrapper.next_event()
                except h11.RemoteProtocolError as exc:
                    await self.debug('[%s] Server: protocol error %r' % (wrapper.client_id, exc))
                    break

                if type(event) is h11.Request:
                    await handler._process_request(wrapper, event)
                    continue
                if type(event) is h11.ConnectionClosed:
                    break
                await self.debug('[%s] Server: unexpected event type %s' % (wrapper.client_id, type(event)))
                break

        except asyncio.CancelledError:
            raise
        except (ConnectionError, h11.ProtocolError) as exc:
            await self.debug('[%s] Server: connection lost %r' % (wrapper.client_id, exc))
        except Exception:
            logger.exception('Connection %s failed' % wrapper.client_id)
        finally:
            await wrapper.shutdown_and_clean_up()
            self.clients.discard(task)

    async def start(self):
        self.server = await asyncio.start_server(
            self.__handle_connection,
            self.host,
            self.port,
            ssl=self.ssl_ctx,
        )
        self.started_evt.set()
        logger.info('Listening on %s:%s' % (self.host, self.bound_port))
        return self.server

    async def serve(self):
        if self.server is None:
            await self.start()
        async with self.server:
            await self.server.serve_forever()
