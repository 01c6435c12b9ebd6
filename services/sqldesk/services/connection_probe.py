"""Connectivity probe used by connection health tests.

The vault only needs a yes/no answer with latency; how the target is dialed
is up to the probe. TcpConnectionProbe checks that the database port
accepts connections. Deployments that want a full login handshake plug in
their own ConnectionProbe.
"""

import asyncio
import contextlib
import time
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class ConnectionParams:
    """Decrypted connection parameters for the execution hand-off path.

    Never returned from public read paths. repr hides the password.
    """

    host: str
    port: int
    username: str
    password: str
    database: str
    encrypt: bool
    connection_timeout: int | None = None  # ms

    def __repr__(self) -> str:
        return (
            f"ConnectionParams(host={self.host!r}, port={self.port}, "
            f"username={self.username!r}, database={self.database!r}, "
            f"encrypt={self.encrypt}, password='***')"
        )


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    latency_ms: float | None = None
    error: str | None = None


@runtime_checkable
class ConnectionProbe(Protocol):
    async def probe(self, params: ConnectionParams, timeout: float) -> ProbeResult:
        """Dial the target. Must not take longer than ``timeout`` seconds."""
        ...


class TcpConnectionProbe:
    """Reachability probe: opens and closes a TCP connection to host:port."""

    async def probe(self, params: ConnectionParams, timeout: float) -> ProbeResult:
        started = time.perf_counter()
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(params.host, params.port), timeout=timeout
            )
        except TimeoutError:
            return ProbeResult(ok=False, error=f"Timed out after {timeout:g}s")
        except OSError as e:
            return ProbeResult(ok=False, error=str(e) or e.__class__.__name__)

        latency_ms = (time.perf_counter() - started) * 1000
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return ProbeResult(ok=True, latency_ms=round(latency_ms, 2))
