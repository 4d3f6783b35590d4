"""Command line options of the miner and their validation."""

from __future__ import annotations

import argparse
import enum
import ipaddress
import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from kpminer.apiserver import LOG_NEXT

PROGRAM_TITLE = "kawpowminer - GPU ProgPOW(0.9.3) miner for Zing"

SIMULATION_URI = "simulation://localhost:0"
EXIT_URI = "stratum+tcp://-:x@exit:0"

HELP_TOPICS = ("con", "test", "cl", "cu", "api", "misc", "env")

CUDA_SCHEDULES = {"auto": 0, "spin": 1, "yield": 2, "sync": 4}

_BIND_PATTERN = re.compile(r"([\da-fA-F.:]*):([\d\-]*)")
_LEADING_INT = re.compile(r"[+-]?\d+")


class OperationMode(enum.Enum):
    """What the miner does once started."""

    NONE = "none"
    SIMULATION = "simulation"
    MINING = "mining"


class MinerType(enum.Enum):
    """Which kind of devices the miner drives."""

    MIXED = "mixed"
    CL = "cl"
    CUDA = "cuda"
    CPU = "cpu"


@dataclass
class MinerOptions:
    """Every setting taken from the command line."""

    show_help: bool = False
    help_topic: str = ""
    show_version: bool = False

    miner_type: MinerType = MinerType.MIXED
    mode: OperationMode = OperationMode.NONE
    list_devices: bool = False
    connections: list[str] = field(default_factory=list)

    # Farm settings
    ergodicity: int = 0
    hw_mon: int = 0
    no_eval: bool = False
    dag_load_mode: int = 0
    temp_stop: int = 0
    temp_start: int = 40

    # Pool settings
    get_work_poll_interval: int = 500
    connection_max_retries: int = 3
    no_work_timeout: int = 180
    no_response_timeout: int = 2
    report_hashrate: bool = False
    pool_failover_timeout: int = 0
    benchmark_block: int = 0
    benchmark_diff: float = 1.0

    # Logging and flow
    verbosity: int = 0
    display_interval: int = 5
    exit_on_error: bool = False
    no_color: bool = False
    syslog: bool = False
    stdout: bool = False

    # API
    api_bind: str = ""
    api_address: str = "0.0.0.0"
    api_port: int = 0
    api_password: str = ""

    # OpenCL
    cl_devices: list[int] = field(default_factory=list)
    cl_global_work_size: int = 0
    cl_global_work_size_multiplier: int = 65536
    cl_local_work_size: int = 128

    # CUDA
    cu_devices: list[int] = field(default_factory=list)
    cu_grid_size: int = 8192
    cu_block_size: int = 128
    cu_parallel_hash: int = 4
    cu_streams: int = 2
    cu_schedule: int = 4


def _stoi(text: str) -> int:
    match = _LEADING_INT.match(text)
    if match is None:
        raise ValueError(f"Invalid port number: '{text}'")
    return int(match.group(0))


def parse_bind(inaddr: str, advertise_negative_port: bool = False) -> tuple[str, int]:
    """Split ``address:port`` into a normalised address and a port number.

    With ``advertise_negative_port`` a negative port (read-only mode) is allowed.
    """
    match = _BIND_PATTERN.fullmatch(inaddr)
    if match is None:
        raise ValueError("Invalid syntax")
    try:
        address = str(ipaddress.ip_address(match.group(1)))
    except ValueError:
        raise ValueError("Invalid Ip Address") from None
    port = _stoi(match.group(2))
    if advertise_negative_port:
        if port < -65535 or port > 65535 or port == 0:
            raise ValueError(
                "Invalid port number. Allowed non zero values in range [-65535 .. 65535]"
            )
    elif port < 1 or port > 65535:
        raise ValueError("Invalid port number. Allowed non zero values in range [1 .. 65535]")
    return address, port


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise RuntimeError(message)


def _ranged(
    kind: Callable[[str], int | float], low: float, high: float
) -> Callable[[str], int | float]:
    def convert(text: str) -> int | float:
        try:
            value = kind(text)
        except ValueError:
            raise argparse.ArgumentTypeError(f"invalid value '{text}'") from None
        if not low <= value <= high:
            raise argparse.ArgumentTypeError(f"Value {text} not in range {low} to {high}")
        return value

    return convert


def _bind_value(text: str) -> str:
    try:
        parse_bind(text, True)
    except ValueError as ex:
        raise argparse.ArgumentTypeError(f"--api-bind: {ex}") from None
    return text


def _build_parser() -> _Parser:
    p = _Parser(prog="kawpowminer", description=PROGRAM_TITLE, add_help=False,
                allow_abbrev=False)
    flag = {"action": "store_true"}

    p.add_argument("-h", "--help", dest="show_help", **flag)
    p.add_argument("-H", "--help-ext", dest="help_topic", choices=HELP_TOPICS)
    p.add_argument("-V", "--version", dest="show_version", **flag)
    p.add_argument("--ergodicity", type=_ranged(int, 0, 2))
    p.add_argument("-v", "--verbosity", type=_ranged(int, 0, LOG_NEXT - 1))
    p.add_argument("--farm-recheck", dest="get_work_poll_interval", type=_ranged(int, 1, 99999))
    p.add_argument("--farm-retries", dest="connection_max_retries", type=_ranged(int, 0, 99999))
    p.add_argument("--work-timeout", dest="no_work_timeout",
                   type=_ranged(int, 100000, 1000000))
    p.add_argument("--response-timeout", dest="no_response_timeout", type=_ranged(int, 2, 999))
    p.add_argument("-R", "--report-hashrate", "--report-hr", dest="report_hashrate", **flag)
    p.add_argument("--display-interval", type=_ranged(int, 1, 1800))
    p.add_argument("--HWMON", dest="hw_mon", type=_ranged(int, 0, 2))
    p.add_argument("--exit", dest="exit_on_error", **flag)
    p.add_argument("-P", "--pool", dest="pools", action="extend", nargs="+", default=[])
    p.add_argument("--failover-timeout", dest="pool_failover_timeout", type=_ranged(int, 0, 999))
    p.add_argument("--nocolor", dest="no_color", **flag)
    p.add_argument("--syslog", **flag)
    p.add_argument("--stdout", **flag)

    p.add_argument("--api-bind", type=_bind_value)
    p.add_argument("--api-port", type=_ranged(int, -65535, 65535))
    p.add_argument("--api-password")

    p.add_argument("--list-devices", **flag)

    p.add_argument("--opencl-device", "--opencl-devices", "--cl-devices", dest="cl_devices",
                   action="extend", nargs="+", type=int)
    p.add_argument("--cl-global-work", dest="cl_global_work_size", type=int)
    p.add_argument("--cl-local-work", dest="cl_local_work_size", type=int,
                   choices=(64, 128, 256))

    p.add_argument("--cuda-devices", "--cu-devices", dest="cu_devices", action="extend",
                   nargs="+", type=int)
    p.add_argument("--cuda-grid-size", "--cu-grid-size", dest="cu_grid_size",
                   type=_ranged(int, 1, 131072))
    p.add_argument("--cuda-block-size", "--cu-block-size", dest="cu_block_size", type=int,
                   choices=(32, 64, 128, 256, 512))
    p.add_argument("--cuda-parallel-hash", "--cu-parallel-hash", dest="cu_parallel_hash",
                   type=int, choices=(1, 2, 4, 8))
    p.add_argument("--cuda-schedule", "--cu-schedule", dest="cu_schedule_name",
                   choices=tuple(CUDA_SCHEDULES), default="sync")
    p.add_argument("--cuda-streams", "--cu-streams", dest="cu_streams",
                   type=_ranged(int, 1, 99))

    p.add_argument("--noeval", dest="no_eval", **flag)
    p.add_argument("-L", "--dag-load-mode", dest="dag_load_mode", type=_ranged(int, 0, 1))
    p.add_argument("-G", "--opencl", dest="cl_miner", **flag)
    p.add_argument("-U", "--cuda", dest="cuda_miner", **flag)
    p.add_argument("-Z", "--simulation", "-M", "--benchmark", dest="benchmark_block", type=int)
    p.add_argument("--diff", dest="benchmark_diff", type=_ranged(float, 0.00001, 10000.0))
    p.add_argument("--tstop", dest="temp_stop", type=_ranged(int, 30, 100))
    p.add_argument("--tstart", dest="temp_start", type=_ranged(int, 30, 100))
    return p


_COPIED = (
    "ergodicity", "verbosity", "get_work_poll_interval", "connection_max_retries",
    "no_work_timeout", "no_response_timeout", "display_interval", "hw_mon",
    "pool_failover_timeout", "api_password", "cl_devices", "cl_global_work_size",
    "cl_local_work_size", "cu_devices", "cu_grid_size", "cu_block_size", "cu_parallel_hash",
    "cu_streams", "dag_load_mode", "benchmark_diff", "temp_stop", "temp_start",
)

_FLAGS = (
    "report_hashrate", "exit_on_error", "no_color", "syslog", "stdout", "list_devices",
    "no_eval",
)


def _pool_connections(pools: Sequence[str]) -> list[str]:
    if not pools:
        raise ValueError("At least one pool definition required. See -P argument.")
    connections = []
    for position, url in enumerate(pools):
        if url == "exit":
            if position == 0:
                raise ValueError(
                    "'exit' failover directive can't be the first in -P arguments list."
                )
            url = EXIT_URI
        connections.append(url)
    return connections


def parse_args(argv: Optional[Sequence[str]] = None) -> MinerOptions:
    """Parse and validate the command line (without the program name).

    Command line syntax and range errors raise RuntimeError; inconsistent
    settings raise ValueError.  When help or version output is requested the
    returned options say so and the remaining checks are skipped.
    """
    ns = _build_parser().parse_args(list(argv) if argv is not None else None)
    opts = MinerOptions()
    for name in _COPIED:
        value = getattr(ns, name)
        if value is not None:
            setattr(opts, name, value)
    for name in _FLAGS:
        setattr(opts, name, bool(getattr(ns, name)))

    if ns.api_bind is not None:
        opts.api_bind = ns.api_bind
        opts.api_address, opts.api_port = parse_bind(ns.api_bind, True)
    if ns.api_port is not None:
        opts.api_port = ns.api_port

    if ns.show_help:
        opts.show_help = True
        return opts
    if ns.help_topic:
        opts.help_topic = ns.help_topic
        return opts
    if ns.show_version:
        opts.show_version = True
        return opts

    if ns.cl_miner:
        opts.miner_type = MinerType.CL
    elif ns.cuda_miner:
        opts.miner_type = MinerType.CUDA
    else:
        opts.miner_type = MinerType.MIXED

    if ns.benchmark_block is not None:
        opts.mode = OperationMode.SIMULATION
        opts.benchmark_block = ns.benchmark_block
        opts.connections.append(SIMULATION_URI)
    else:
        opts.mode = OperationMode.MINING
        if not opts.list_devices:
            opts.connections.extend(_pool_connections(ns.pools))

    opts.cu_schedule = CUDA_SCHEDULES[ns.cu_schedule_name]

    if opts.temp_stop:
        opts.hw_mon = max(opts.hw_mon, 1)
        if opts.temp_stop <= opts.temp_start:
            raise ValueError("-tstop must be greater than -tstart")

    return opts