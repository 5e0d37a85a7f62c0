"""
SNMP client abstraction.

We support two probes with the same interface:

1. `SnmpProbe`: real SNMPv2c GETs using pysnmp's asyncio high-level API.
2. `StubProbe`: generates realistic-looking counters in-memory.

This lets you:
- run everything locally without a real router
- later flip USE_SNMP_STUB=0 and talk to real devices

A probe answers one GET with one `VarbindResult` per requested OID, in order.
Failures of the whole request raise `SnmpError`; per-OID problems (no such
object, non-integer value) are reported on the individual result so the
sampler can attribute them to the right interface.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from pyasn1.type import univ
from pysnmp.error import PySnmpError
from pysnmp.hlapi.v3arch.asyncio import (
    CommunityData,
    ContextData,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    get_cmd,
)
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

from weathermap.config import Settings

# IF-MIB speed columns, used by the stub to answer speed OIDs sensibly.
IF_SPEED = "1.3.6.1.2.1.2.2.1.5."          # ifSpeed, bits/s
IF_HIGH_SPEED = "1.3.6.1.2.1.31.1.1.1.15."  # ifHighSpeed, Mbit/s


class SnmpError(Exception):
    """Raised when SNMP retrieval fails."""


@dataclass(frozen=True)
class VarbindResult:
    """
    Outcome for one requested OID.

    - value: the integer value, or None if the agent returned something else
    - error: set when the agent reported an exception for this OID
    """

    oid: str
    value: Optional[int] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Stub implementation: fake counters for demo purposes
# ---------------------------------------------------------------------------


class StubProbe:
    """
    Simulated agent.

    Each GET increments every requested counter by a random amount, so
    consecutive polls produce plausible throughput. Speed OIDs answer a
    constant 100 Mbps.
    """

    def __init__(self, seed: Optional[int] = None) -> None:
        self._random = random.Random(seed)
        self._counters: Dict[Tuple[str, str], int] = {}

    def _next_value(self, host: str, oid: str) -> int:
        if oid.startswith(IF_SPEED):
            return 100_000_000
        if oid.startswith(IF_HIGH_SPEED):
            return 100

        key = (host, oid)
        if key not in self._counters:
            self._counters[key] = self._random.randint(1_000_000, 10_000_000)
        # Up to ~80 Mbps over a 5 s interval.
        self._counters[key] += self._random.randint(10_000, 50_000_000)
        return self._counters[key]

    async def get(self, host: str, community: str, port: int, oids: Sequence[str]) -> List[VarbindResult]:
        return [VarbindResult(oid=oid, value=self._next_value(host, oid)) for oid in oids]

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Real SNMP implementation
# ---------------------------------------------------------------------------


class SnmpProbe:
    """SNMPv2c GET against a real agent; one engine shared by all requests."""

    def __init__(self, timeout: float = 1.0, retries: int = 1) -> None:
        self.timeout = timeout
        self.retries = retries
        self._engine = SnmpEngine()

    async def get(self, host: str, community: str, port: int, oids: Sequence[str]) -> List[VarbindResult]:
        """
        Perform a single GET for all `oids`.

        Raises SnmpError on transport failures and on PDU-level error status.
        """
        try:
            transport = await UdpTransportTarget.create(
                (host, port), timeout=self.timeout, retries=self.retries
            )
            errorIndication, errorStatus, errorIndex, varBinds = await get_cmd(
                self._engine,
                CommunityData(community, mpModel=1),  # SNMP v2c
                transport,
                ContextData(),
                *[ObjectType(ObjectIdentity(oid)) for oid in oids],
            )
        except (PySnmpError, OSError) as exc:
            raise SnmpError(str(exc)) from exc

        if errorIndication:
            raise SnmpError(str(errorIndication))
        if errorStatus:
            msg = f"{errorStatus.prettyPrint()} at {errorIndex and varBinds[int(errorIndex) - 1][0] or '?'}"
            raise SnmpError(msg)

        results: List[VarbindResult] = []
        for oid, (_, value) in zip(oids, varBinds):
            if isinstance(value, (NoSuchObject, NoSuchInstance, EndOfMibView)):
                results.append(VarbindResult(oid=oid, error=f"{value.__class__.__name__} for OID {oid}"))
            elif isinstance(value, univ.Integer):
                # Counter32/Counter64/Gauge32/Integer32 all derive from Integer.
                results.append(VarbindResult(oid=oid, value=int(value)))
            else:
                results.append(VarbindResult(oid=oid))
        return results

    async def close(self) -> None:
        self._engine.close_dispatcher()


def get_probe(settings: Settings):
    """
    Main entry point: returns the probe selected by USE_SNMP_STUB.
    """
    if settings.use_snmp_stub:
        return StubProbe()
    return SnmpProbe(timeout=settings.snmp_timeout_seconds, retries=settings.snmp_retries)
