"""Statistics reported by the API server: JSON summaries and the HTML status page."""

from __future__ import annotations

import socket
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

_UINT32_MASK = 0xFFFFFFFF
_UINT64_MASK = 0xFFFFFFFFFFFFFFFF

_HDR0_COLOR = "#e8e8e8"
_HDR1_COLOR = "#f0f0f0"
_ROW0_COLOR = "#f8f8f8"
_ROW1_COLOR = "#ffffff"
_ROWRED_COLOR = "#f46542"


@dataclass
class SolutionStats:
    """Counters of found solutions and the time of the last one."""

    accepted: int = 0
    rejected: int = 0
    failed: int = 0
    tstamp: float = field(default_factory=time.monotonic)


@dataclass
class Sensors:
    """Hardware sensor readings of one device."""

    temp_c: int = 0
    fan_p: int = 0
    power_w: float = 0.0


@dataclass
class MinerTelemetry:
    """Hash rate, solutions and sensors of one miner or of the whole farm."""

    hashrate: float = 0.0
    solutions: SolutionStats = field(default_factory=SolutionStats)
    sensors: Sensors = field(default_factory=Sensors)


@dataclass
class Telemetry:
    """A snapshot of the farm: totals plus one entry per miner."""

    start: float = field(default_factory=time.monotonic)
    farm: MinerTelemetry = field(default_factory=MinerTelemetry)
    miners: list[MinerTelemetry] = field(default_factory=list)


class _Descriptor(Protocol):
    unique_id: str
    type: Any
    subscription_type: Any
    cl_detected: bool
    cl_name: str
    cu_name: str
    total_memory: int


class _Miner(Protocol):
    index: int
    descriptor: _Descriptor
    paused: bool
    paused_reason: str


class _Farm(Protocol):
    miners: Sequence[_Miner]
    nonce_scrambler: int
    segment_width: int
    tstart: int
    tstop: int

    def telemetry(self) -> Telemetry: ...


class _Connection(Protocol):
    host: str
    port: int


class _Pools(Protocol):
    active_connection: _Connection
    connection_switches: int
    current_epoch: int
    epoch_changes: int
    current_difficulty: float

    def is_connected(self) -> bool: ...


def _scaled(value: float, base: float, suffixes: Sequence[str]) -> str:
    index = 0
    while value > base and index < len(suffixes) - 1:
        value /= base
        index += 1
    return f"{value:.2f} {suffixes[index]}"


def format_hashes(value: float) -> str:
    """Format a hash rate with a scale suffix (h, Kh, Mh, Gh)."""
    return _scaled(float(value), 1000.0, ("h", "Kh", "Mh", "Gh"))


def format_memory(value: float) -> str:
    """Format a memory size with a binary scale suffix (B, KB, MB, GB)."""
    return _scaled(float(value), 1024.0, ("B", "KB", "MB", "GB"))


def _hex64(value: int) -> str:
    return f"0x{value & _UINT64_MASK:016x}"


def _hex32(value: int) -> str:
    return f"0x{value & _UINT32_MASK:08x}"


def _name_of(value: Any) -> str:
    return str(getattr(value, "name", value)).lower()


def _hostname() -> Optional[str]:
    try:
        return socket.gethostname()
    except OSError:
        return None


def miner_stat1(farm: _Farm, pools: _Pools, version: str) -> list[str]:
    """Return the nine-field summary answered to ``miner_getstat1``."""
    t = farm.telemetry()
    connection = pools.active_connection
    running_minutes = int((time.monotonic() - t.start) // 60)
    sols = t.farm.solutions

    total = f"{t.farm.hashrate / 1000.0:.0f};{sols.accepted};{sols.rejected}"
    detailed = ";".join(f"{m.hashrate / 1000.0:.0f}" for m in t.miners)
    detailed_dual = ";".join("off" for _ in t.miners)
    temps_fans = ";".join(f"{m.sensors.temp_c};{m.sensors.fan_p}" for m in t.miners)

    return [
        version,
        str(running_minutes),
        total,
        detailed,
        "0;0;0",
        detailed_dual,
        temps_fans,
        f"{connection.host}:{connection.port}",
        f"{sols.failed};0;0;0",
    ]


def miner_detail(telemetry: Telemetry, miner: _Miner, farm: _Farm) -> dict:
    """Return the detailed status of one miner."""
    index = miner.index
    entry = telemetry.miners[index]
    descriptor = miner.descriptor
    now = time.monotonic()

    kind = _name_of(descriptor.type)
    if kind == "gpu":
        type_name = "GPU"
    elif kind == "accelerator":
        type_name = "ACCELERATOR"
    else:
        type_name = "CPU"
    device_name = descriptor.cl_name if descriptor.cl_detected else descriptor.cu_name

    width = farm.segment_width
    start_nonce = (farm.nonce_scrambler + (index << width)) & _UINT64_MASK
    end_nonce = start_nonce + (1 << width)

    return {
        "_index": index,
        "_mode": "CUDA" if _name_of(descriptor.subscription_type) == "cuda" else "OpenCL",
        "hardware": {
            "pci": descriptor.unique_id,
            "type": type_name,
            "name": f"{device_name} {format_memory(descriptor.total_memory)}",
            "sensors": [entry.sensors.temp_c, entry.sensors.fan_p, entry.sensors.power_w],
        },
        "mining": {
            "shares": [
                entry.solutions.accepted,
                entry.solutions.rejected,
                entry.solutions.failed,
                int(now - entry.solutions.tstamp),
            ],
            "paused": miner.paused,
            "pause_reason": miner.paused_reason if miner.paused else None,
            "segment": [_hex64(start_nonce), _hex64(end_nonce)],
            "hashrate": _hex32(int(entry.hashrate)),
        },
    }


def miner_stat_detail(farm: _Farm, pools: _Pools, version: str) -> dict:
    """Return the total and per-device status answered to ``miner_getstatdetail``."""
    now = time.monotonic()
    t = farm.telemetry()
    connection = pools.active_connection
    sols = t.farm.solutions

    monitors: Optional[dict] = None
    if farm.tstop:
        monitors = {"temperatures": [farm.tstart, farm.tstop]}

    return {
        "devices": [miner_detail(t, miner, farm) for miner in farm.miners],
        "monitors": monitors,
        "connection": {
            "uri": str(connection),
            "connected": pools.is_connected(),
            "switches": pools.connection_switches,
        },
        "host": {
            "version": version,
            "runtime": int(now - t.start),
            "name": _hostname(),
        },
        "mining": {
            "hashrate": _hex32(int(t.farm.hashrate)),
            "epoch": pools.current_epoch,
            "epoch_changes": pools.epoch_changes,
            "difficulty": pools.current_difficulty,
            "shares": [sols.accepted, sols.rejected, sols.failed, int(now - sols.tstamp)],
        },
    }


def _as_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return repr(value)
    return str(value)


def http_stat_page(stat: dict) -> str:
    """Render the result of :func:`miner_stat_detail` as an HTML status page."""
    host = stat["host"]
    runtime = int(host.get("runtime") or 0)
    hours, rest = divmod(runtime, 3600)
    minutes = rest // 60

    parts = [
        "<!doctype html>",
        "<html lang=en>",
        "<head>",
        "<meta charset=utf-8>",
        '<meta http-equiv="refresh" content="30">',
        f"<title>{_as_string(host.get('name'))}</title>",
        "<style>",
        'body{font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,',
        '"Helvetica Neue",Helvetica,Arial,sans-serif;font-size:16px;line-height:1.5;',
        "text-align:center;}",
        "table,td,th{border:1px inset #000;}",
        "table{border-spacing:0;}",
        "td,th{padding:3px;}",
        f"tbody tr:nth-child(even){{background-color:{_ROW0_COLOR};}}",
        f"tbody tr:nth-child(odd){{background-color:{_ROW1_COLOR};}}",
        ".mx-auto{margin-left:auto;margin-right:auto;}",
        f".bg-header1{{background-color:{_HDR1_COLOR};}}",
        f".bg-header0{{background-color:{_HDR0_COLOR};}}",
        f".bg-red{{color:{_ROWRED_COLOR};}}",
        ".right{text-align: right;}",
        "</style>",
        "<meta http-equiv=refresh content=30>",
        "</head>",
        "<body>",
        "<table class=mx-auto>",
        "<thead>",
        "<tr class=bg-header1>",
        f"<th colspan=9>{_as_string(host.get('version'))} - {hours}:{minutes:02d}",
        f"<br>Pool: {_as_string(stat['connection'].get('uri'))}</th>",
        "</tr>",
        "<tr class=bg-header0>",
        "<th>PCI</th>",
        "<th>Device</th>",
        "<th>Mode</th>",
        "<th>Paused</th>",
        "<th class=right>Hash Rate</th>",
        "<th class=right>Solutions</th>",
        "<th class=right>Temp.</th>",
        "<th class=right>Fan %</th>",
        "<th class=right>Power</th>",
        "</tr>",
        "</thead><tbody>",
    ]

    total_hashrate = 0.0
    total_power = 0.0
    total_solutions = 0

    for device in stat.get("devices") or []:
        hardware = device["hardware"]
        mining = device["mining"]
        sensors = hardware["sensors"]
        hashrate = float(int(mining["hashrate"], 16))
        total_hashrate += hashrate
        total_power += float(sensors[2])
        total_solutions += int(mining["shares"][0])
        paused = bool(mining["paused"])

        parts.append("<tr" + (' class="bg-red"' if paused else "") + ">")
        parts.append(f"<td>{_as_string(hardware['pci'])}</td>")
        parts.append(f"<td>{_as_string(hardware['name'])}</td>")
        parts.append(f"<td>{_as_string(device['_mode'])}</td>")
        reason = _as_string(mining.get("pause_reason")) if paused else "No"
        parts.append(f"<td>{reason}</td>")
        parts.append(f"<td class=right>{format_hashes(hashrate)}</td>")
        parts.append(f"<td class=right>{_as_string(mining['shares'][0])}</td>")
        parts.extend(f"<td class=right>{_as_string(value)}</td>" for value in sensors[:3])
        parts.append("</tr>")

    parts.append("</tbody>")
    parts.append(
        "<tfoot><tr class=bg-header0><td colspan=4 class=right>Total</td><td class=right>"
        f"{format_hashes(total_hashrate)}</td><td class=right>{total_solutions}"
        f"</td><td colspan=3 class=right>{total_power:.2f}</td></tfoot>"
    )
    parts.append("</table></body></html>")
    return "".join(parts)