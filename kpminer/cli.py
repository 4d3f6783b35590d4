"""Command line front end: device listing, device subscription and the run loop."""

from __future__ import annotations

import enum
import logging
import os
import platform
import signal
import sys
import threading
from dataclasses import dataclass
from typing import Mapping, MutableMapping, Optional, Sequence

from kpminer.apiserver import ApiServer
from kpminer.apistats import format_memory
from kpminer.helptext import help_ext_text, help_text
from kpminer.options import MinerOptions, MinerType, OperationMode, parse_args

log = logging.getLogger(__name__)

PROJECT_NAME = "kawpowminer"
PROJECT_VERSION = "1.2.4"
PROJECT_NAME_WITH_VERSION = f"{PROJECT_NAME}-{PROJECT_VERSION}"

_GPU_ENVIRONMENT = {
    "GPU_MAX_HEAP_SIZE": "100",
    "GPU_MAX_ALLOC_PERCENT": "100",
    "GPU_SINGLE_ALLOC_PERCENT": "100",
}

_COMPILED_BACKENDS = ("cl", "cu")


class DeviceType(enum.Enum):
    """Kind of a physical mining device."""

    CPU = "cpu"
    GPU = "gpu"
    ACCELERATOR = "accelerator"


class SubscriptionType(enum.Enum):
    """Which backend a device has been assigned to."""

    NONE = "none"
    CUDA = "cuda"
    OPENCL = "opencl"
    CPU = "cpu"


@dataclass
class DeviceDescriptor:
    """Description of one detected mining device."""

    unique_id: str = ""
    name: str = ""
    type: DeviceType = DeviceType.GPU
    subscription_type: SubscriptionType = SubscriptionType.NONE
    total_memory: int = 0
    cu_detected: bool = False
    cu_name: str = ""
    cu_compute: str = ""
    cl_detected: bool = False
    cl_name: str = ""
    cl_max_mem_alloc: int = 0
    cl_max_work_group: int = 0


_TYPE_LABELS = {DeviceType.CPU: "Cpu", DeviceType.GPU: "Gpu", DeviceType.ACCELERATOR: "Acc"}


def _uses_cuda(miner_type: MinerType) -> bool:
    return miner_type in (MinerType.CUDA, MinerType.MIXED)


def _uses_cl(miner_type: MinerType) -> bool:
    return miner_type in (MinerType.CL, MinerType.MIXED)


def format_device_table(devices: Mapping[str, DeviceDescriptor], miner_type: MinerType) -> str:
    """Return the table printed by ``--list-devices``, rows ordered by device id."""
    cuda = _uses_cuda(miner_type)
    cl = _uses_cl(miner_type)

    def header(cells: Sequence[str], cuda_cells: Sequence[str], cl_cell: str,
               right_cells: Sequence[str]) -> str:
        line = cells[0].rjust(4) + cells[1].ljust(10) + cells[2].ljust(5) + cells[3].ljust(30)
        if cuda:
            line += cuda_cells[0].ljust(5) + cuda_cells[1].ljust(4)
        if cl:
            line += cl_cell.ljust(5)
        line += right_cells[0].rjust(13) + " "
        if cl:
            line += "".join(cell.rjust(13) + " " for cell in right_cells[1:])
        return line

    lines = [
        header((" Id ", "Pci Id    ", "Type ", "Name" + " " * 26), ("CUDA ", "SM  "), "CL   ",
               ("Total Memory", "Cl Max Alloc", "Cl Max W.Grp")),
        header(("--- ", "--------- ", "---- ", "-" * 29 + " "), ("---- ", "--- "), "---- ",
               ("-" * 12,) * 3),
    ]

    for position, (key, device) in enumerate(sorted(devices.items())):
        line = str(position).rjust(3) + " " + key.ljust(10)
        line += _TYPE_LABELS.get(device.type, "").ljust(5)
        line += device.name[:28].ljust(30)
        if cuda:
            line += ("Yes" if device.cu_detected else "").ljust(5)
            line += str(device.cu_compute).ljust(4)
        if cl:
            line += ("Yes" if device.cl_detected else "").ljust(5)
        line += format_memory(device.total_memory).rjust(13) + " "
        if cl:
            line += format_memory(device.cl_max_mem_alloc).rjust(13) + " "
            line += format_memory(device.cl_max_work_group).rjust(13) + " "
        lines.append(line)

    return "".join(f"{line}\n" for line in lines)


def subscribe_devices(devices: Mapping[str, DeviceDescriptor], options: MinerOptions) -> int:
    """Assign devices to backends as the options ask; return how many were assigned.

    Explicit device indexes are applied first (CUDA before OpenCL), then every
    remaining detected device of a backend without explicit indexes is taken.
    """
    ordered = [devices[key] for key in sorted(devices)]
    miner_type = options.miner_type

    def picked(indexes: Sequence[int]) -> list[DeviceDescriptor]:
        return [ordered[index] for index in indexes if 0 <= index < len(ordered)]

    if options.cu_devices and _uses_cuda(miner_type):
        for device in picked(options.cu_devices):
            if not device.cu_detected:
                raise RuntimeError("Can't CUDA subscribe a non-CUDA device.")
            device.subscription_type = SubscriptionType.CUDA

    if options.cl_devices and _uses_cl(miner_type):
        for device in picked(options.cl_devices):
            if not device.cl_detected:
                raise RuntimeError("Can't OpenCL subscribe a non-OpenCL device.")
            if device.subscription_type is not SubscriptionType.NONE:
                raise RuntimeError("Can't OpenCL subscribe a CUDA subscribed device.")
            device.subscription_type = SubscriptionType.OPENCL

    if not options.cu_devices and _uses_cuda(miner_type):
        for device in ordered:
            if device.cu_detected and device.subscription_type is SubscriptionType.NONE:
                device.subscription_type = SubscriptionType.CUDA

    if not options.cl_devices and _uses_cl(miner_type):
        for device in ordered:
            if device.cl_detected and device.subscription_type is SubscriptionType.NONE:
                device.subscription_type = SubscriptionType.OPENCL

    if miner_type is MinerType.CPU:
        for device in ordered:
            device.subscription_type = SubscriptionType.CPU

    count = sum(device.subscription_type is not SubscriptionType.NONE for device in ordered)
    if not count:
        raise RuntimeError("No mining device selected. Aborting ...")
    return count


class MinerCli:
    """Runs the miner front end with validated options over a set of detected devices."""

    def __init__(self, options: MinerOptions,
                 devices: Optional[MutableMapping[str, DeviceDescriptor]] = None) -> None:
        self.options = options
        self.devices: MutableMapping[str, DeviceDescriptor] = (
            devices if devices is not None else {}
        )
        self.farm = None
        self.pools = None
        self.running = False
        self._shouldstop = threading.Event()

    def stop(self) -> None:
        """Ask the run loop to end."""
        self.running = False
        self._shouldstop.set()

    def _signal_handler(self, signum: int, frame: object) -> None:
        log.info("Got interrupt ...")
        self.stop()

    def execute(self) -> None:
        """List the devices, or subscribe them and run until stopped."""
        if not self.devices:
            raise RuntimeError("No usable mining devices found")

        if self.options.list_devices:
            sys.stdout.write(format_device_table(self.devices, self.options.miner_type))
            return

        subscribe_devices(self.devices, self.options)
        self._run()

    def _status_line(self) -> str:
        if self.pools is not None and self.pools.is_connected() and self.farm is not None:
            return str(self.farm.telemetry())
        return "Not connected"

    def _run(self) -> None:
        self.running = not self._shouldstop.is_set()
        installed: dict[int, object] = {}
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                installed[signum] = signal.signal(signum, self._signal_handler)
        api: Optional[ApiServer] = None
        try:
            if self.options.mode is not OperationMode.SIMULATION:
                for connection in self.options.connections:
                    log.info("Configured pool %s", connection)

            api = ApiServer(self.options.api_address, self.options.api_port,
                            self.options.api_password, self.farm, self.pools,
                            PROJECT_NAME_WITH_VERSION)
            if self.options.api_port:
                api.start()

            while not self._shouldstop.wait(self.options.display_interval):
                log.info("%s", self._status_line())
        finally:
            if api is not None and api.is_running():
                api.stop()
            for signum, previous in installed.items():
                signal.signal(signum, previous)
            self.running = False
            log.info("Terminated!")


def _banner() -> str:
    system = platform.system().lower() or "unknown"
    return f"\n\n{PROJECT_NAME} {PROJECT_VERSION}\nBuild: {system}/release/python\n\n"


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the miner command line; return the process exit status.

    0 normal exit, 1 invalid arguments, 2 runtime error, 3 other failures.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    sys.stdout.write(_banner())

    if not args:
        sys.stderr.write(
            "No arguments specified. \n"
            f"Try '{PROJECT_NAME} --help' to get a list of arguments.\n\n"
        )
        return 1

    try:
        os.environ.update(_GPU_ENVIRONMENT)

        options = parse_args(args)
        if options.show_help:
            sys.stdout.write(help_text(_COMPILED_BACKENDS, True))
            return 0
        if options.help_topic:
            sys.stdout.write(help_ext_text(options.help_topic, options))
            return 0
        if options.show_version:
            return 0

        if os.environ.get("SYSLOG") is not None:
            options.syslog = True
        if options.syslog or os.environ.get("NO_COLOR") is not None:
            options.no_color = True

        MinerCli(options, {}).execute()
        sys.stdout.write("\n\n")
        return 0
    except ValueError as ex:
        sys.stderr.write(
            f"Error: {ex}\nTry {PROJECT_NAME} --help to get an explained list of arguments.\n\n"
        )
        return 1
    except RuntimeError as ex:
        sys.stderr.write(f"Error: {ex}\n\n")
        return 2
    except Exception as ex:
        sys.stderr.write(f"Error: {ex}\n\n")
        return 3