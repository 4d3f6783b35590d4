import socket
import time
from dataclasses import dataclass, field

import pytest

from kpminer.apistats import (
    MinerTelemetry,
    Sensors,
    SolutionStats,
    Telemetry,
    format_hashes,
    format_memory,
    http_stat_page,
    miner_detail,
    miner_stat1,
    miner_stat_detail,
)

VERSION = "kpminer-1.2.4"


@dataclass
class FakeDescriptor:
    unique_id: str = "01:00.0"
    type: str = "Gpu"
    subscription_type: str = "Cuda"
    cl_detected: bool = False
    cl_name: str = "Example CL Card"
    cu_name: str = "Example CU Card"
    total_memory: int = 8 * 1024 * 1024 * 1024


@dataclass
class FakeMiner:
    index: int
    descriptor: FakeDescriptor = field(default_factory=FakeDescriptor)
    paused: bool = False
    paused_reason: str = ""


@dataclass
class FakeFarm:
    snapshot: Telemetry
    miners: list
    nonce_scrambler: int = 0x1000
    segment_width: int = 32
    tstart: int = 0
    tstop: int = 0

    def telemetry(self):
        return self.snapshot


@dataclass
class FakeConnection:
    host: str = "pool.example.com"
    port: int = 4444

    def __str__(self):
        return f"stratum+tcp://user:password@{self.host}:{self.port}"


@dataclass
class FakePools:
    active_connection: FakeConnection = field(default_factory=FakeConnection)
    connection_switches: int = 2
    current_epoch: int = 7
    epoch_changes: int = 1
    current_difficulty: float = 4.5

    def is_connected(self):
        return True


def make_farm(**kwargs):
    miners_tel = [
        MinerTelemetry(
            hashrate=12000.0,
            solutions=SolutionStats(accepted=4, rejected=1, failed=0),
            sensors=Sensors(temp_c=60, fan_p=70, power_w=100.5),
        ),
        MinerTelemetry(
            hashrate=8000.0,
            solutions=SolutionStats(accepted=2, rejected=0, failed=3),
            sensors=Sensors(temp_c=55, fan_p=65, power_w=90.0),
        ),
    ]
    snapshot = Telemetry(
        start=time.monotonic() - 125,
        farm=MinerTelemetry(
            hashrate=20000.0, solutions=SolutionStats(accepted=6, rejected=1, failed=3)
        ),
        miners=miners_tel,
    )
    miners = [FakeMiner(0), FakeMiner(1, paused=True, paused_reason="overheating")]
    return FakeFarm(snapshot=snapshot, miners=miners, **kwargs)


def test_format_hashes_scales():
    assert format_hashes(1500) == "1.50 Kh"
    assert format_hashes(10).endswith(" h")
    assert format_hashes(5e9).endswith(" Gh")
    assert format_hashes(5e15).endswith(" Gh")


def test_format_memory_scales():
    assert format_memory(100).endswith(" B")
    assert format_memory(2048).endswith(" KB")
    assert format_memory(8 * 1024**3).endswith(" GB")


def test_miner_stat1_fields():
    farm = make_farm()
    pools = FakePools()
    result = miner_stat1(farm, pools, VERSION)
    assert len(result) == 9
    assert result[0] == VERSION
    assert int(result[1]) >= 2
    parts = result[2].split(";")
    assert parts[1:] == ["6", "1"]
    assert len(result[3].split(";")) == 2
    assert result[4] == "0;0;0"
    assert result[5] == "off;off"
    assert result[6] == "60;70;55;65"
    assert result[7] == "pool.example.com:4444"
    assert result[8] == "3;0;0;0"


def test_miner_detail_structure():
    farm = make_farm()
    t = farm.telemetry()
    detail = miner_detail(t, farm.miners[1], farm)
    assert detail["_index"] == 1
    assert detail["_mode"] == "CUDA"
    hw = detail["hardware"]
    assert hw["type"] == "GPU"
    assert hw["pci"] == "01:00.0"
    assert hw["name"].startswith("Example CU Card ")
    assert hw["sensors"] == [55, 65, 90.0]
    mining = detail["mining"]
    assert mining["shares"][:3] == [2, 0, 3]
    assert mining["paused"] is True
    assert mining["pause_reason"] == "overheating"
    assert int(mining["hashrate"], 16) == 8000


def test_miner_detail_segment_roundtrip():
    farm = make_farm(nonce_scrambler=0xABCDEF, segment_width=20)
    detail = miner_detail(farm.telemetry(), farm.miners[1], farm)
    start, end = (int(v, 16) for v in detail["mining"]["segment"])
    assert start == 0xABCDEF + (1 << 20)
    assert end - start == 1 << 20
    assert all(v.startswith("0x") for v in detail["mining"]["segment"])


def test_miner_detail_opencl_and_unpaused():
    farm = make_farm()
    farm.miners[0].descriptor = FakeDescriptor(
        type="Accelerator", subscription_type="OpenCL", cl_detected=True
    )
    detail = miner_detail(farm.telemetry(), farm.miners[0], farm)
    assert detail["_mode"] == "OpenCL"
    assert detail["hardware"]["type"] == "ACCELERATOR"
    assert detail["hardware"]["name"].startswith("Example CL Card ")
    assert detail["mining"]["pause_reason"] is None


def test_miner_detail_index_out_of_range():
    farm = make_farm()
    with pytest.raises(IndexError):
        miner_detail(farm.telemetry(), FakeMiner(5), farm)


def test_miner_stat_detail():
    farm = make_farm()
    pools = FakePools()
    stat = miner_stat_detail(farm, pools, VERSION)
    assert len(stat["devices"]) == 2
    assert stat["monitors"] is None
    assert stat["host"]["version"] == VERSION
    assert stat["host"]["runtime"] >= 125
    assert stat["host"]["name"] == socket.gethostname()
    assert stat["connection"]["uri"] == str(pools.active_connection)
    assert stat["connection"]["connected"] is True
    assert stat["connection"]["switches"] == 2
    assert int(stat["mining"]["hashrate"], 16) == 20000
    assert stat["mining"]["epoch"] == 7
    assert stat["mining"]["difficulty"] == 4.5
    assert stat["mining"]["shares"][:3] == [6, 1, 3]


def test_miner_stat_detail_temperatures():
    farm = make_farm(tstart=40, tstop=80)
    stat = miner_stat_detail(farm, FakePools(), VERSION)
    assert stat["monitors"] == {"temperatures": [40, 80]}


def test_http_page_from_detail():
    farm = make_farm()
    pools = FakePools()
    page = http_stat_page(miner_stat_detail(farm, pools, VERSION))
    assert page.startswith("<!doctype html>")
    assert page.endswith("</table></body></html>")
    assert f"<br>Pool: {pools.active_connection}</th>" in page
    assert page.count('<tr class="bg-red">') == 1
    assert "<td>overheating</td>" in page
    assert "<td>No</td>" in page
    assert "<td class=right>100.5</td>" in page
    assert f"<td class=right>{format_hashes(20000.0)}</td>" in page


def test_http_page_runtime_and_totals():
    stat = {
        "host": {"version": VERSION, "runtime": 3725, "name": "rig"},
        "connection": {"uri": "stratum://pool.example.com:3333"},
        "devices": [
            {
                "_mode": "CUDA",
                "hardware": {"pci": "01:00.0", "name": "Card", "sensors": [50, 60, 120.5]},
                "mining": {"hashrate": "0x000003e8", "shares": [9, 0, 0, 1], "paused": False,
                           "pause_reason": None},
            }
        ],
    }
    page = http_stat_page(stat)
    assert f"{VERSION} - 1:02" in page
    assert "<title>rig</title>" in page
    assert "<td colspan=3 class=right>120.50</td>" in page
    assert "<td class=right>9</td></tfoot>" not in page
    assert "</td><td class=right>9</td><td colspan=3" in page