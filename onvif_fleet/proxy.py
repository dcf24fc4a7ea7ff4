# proxy.py
# Raw TCP relay from a camera's own (ip, port) to the recorder. No RTSP or
# HTTP awareness: bytes are copied in both directions until one side closes.

import asyncio
import logging

logger = logging.getLogger(__name__)

BUFFER_SIZE = 64 * 1024


async def _pipe(reader, writer):
    while True:
        data = await reader.read(BUFFER_SIZE)
        if not data:
            break
        writer.write(data)
        await writer.drain()


def _close(writer):
    if writer.is_closing():
        return
    # abort() drops unsent data and skips the lingering close
    writer.transport.abort()


class StreamProxy:
    """One listening socket bound to (listen_host, listen_port) for one camera."""

    def __init__(self, name, listen_host, listen_port, target_host, target_port, connect_timeout=10):
        self.name = name
        self.listen_host = listen_host
        self.listen_port = listen_port
        self.target_host = target_host
        self.target_port = target_port
        self.connect_timeout = connect_timeout
        self.server = None
        self._connections = set()

    def __repr__(self):
        return (f"StreamProxy({self.name}: {self.listen_host}:{self.listen_port} -> "
                f"{self.target_host}:{self.target_port})")

    @property
    def bound_port(self):
        if self.server is None or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    @property
    def active_connections(self):
        return len(self._connections)

    async def start(self):
        self.server = await asyncio.start_server(self._handle_client, self.listen_host, self.listen_port)
        logger.info(f"[{self.name}] Started tcp proxy from {self.listen_host}:{self.bound_port} "
                    f"to {self.target_host}:{self.target_port}")

    async def _handle_client(self, client_reader, client_writer):
        task = asyncio.current_task()
        self._connections.add(task)
        peer = client_writer.get_extra_info('peername')
        try:
            try:
                target_reader, target_writer = await asyncio.wait_for(
                    asyncio.open_connection(self.target_host, self.target_port), self.connect_timeout)
            except (OSError, asyncio.TimeoutError) as e:
                logger.info(f"[{self.name}] Cannot reach {self.target_host}:{self.target_port} for {peer}: {e}")
                _close(client_writer)
                return

            logger.debug(f"[{self.name}] Relaying {peer} -> {self.target_host}:{self.target_port}")
            await self._relay(client_reader, client_writer, target_reader, target_writer)
        finally:
            self._connections.discard(task)

    async def _relay(self, client_reader, client_writer, target_reader, target_writer):
        upstream = asyncio.create_task(_pipe(client_reader, target_writer))
        downstream = asyncio.create_task(_pipe(target_reader, client_writer))
        try:
            done, pending = await asyncio.wait({upstream, downstream}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.debug(f"[{self.name}] Connection error: {task.exception()}")
        finally:
            for task in (upstream, downstream):
                task.cancel()
            await asyncio.gather(upstream, downstream, return_exceptions=True)
            _close(client_writer)
            _close(target_writer)

    async def stop(self):
        if self.server is None:
            return
        self.server.close()
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        await self.server.wait_closed()
        self.server = None
        logger.info(f"[{self.name}] Stopped tcp proxy on {self.listen_host}:{self.listen_port}")
