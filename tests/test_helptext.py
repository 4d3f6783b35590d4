import pytest

from kpminer.helptext import HELP_EXT_TOPICS, help_ext_text, help_text
from kpminer.options import PROGRAM_TITLE, MinerOptions


def test_help_starts_with_title():
    text = help_text(("cl", "cu"), True)
    assert text.splitlines()[0] == PROGRAM_TITLE
    assert text.endswith("\n")


def test_help_lists_only_enabled_backends():
    text = help_text(("cu",), False)
    assert "-U,--cuda           Mine/Benchmark using CUDA only" in text
    assert "-G,--opencl" not in text
    assert "--cpu" not in text
    assert "'api'  API and Http monitoring interface" not in text


def test_help_context_list_matches_backends():
    text = help_text(("cl", "cu"), True)
    assert "TEXT {'con','test',cl,cu,api,'misc','env'}" in text
    bare = help_text((), False)
    assert "TEXT {'con','test','misc','env'}" in bare


def test_help_backend_order_is_fixed():
    assert help_text(("cu", "cl"), True) == help_text(("cl", "cu"), True)


def test_help_rejects_unknown_backend():
    with pytest.raises(ValueError):
        help_text(("gpu",), True)


def test_every_topic_renders():
    options = MinerOptions()
    headings = {
        "con": "Connections specifications :",
        "test": "Benchmarking / Simulation options :",
        "cl": "OpenCL Extended Options :",
        "cu": "CUDA Extended Options :",
        "cp": "CPU Extended Options :",
        "api": "API Interface Options :",
        "misc": "Miscellaneous Options :",
        "env": "Environment variables :",
    }
    assert set(HELP_EXT_TOPICS) == set(headings)
    for topic, heading in headings.items():
        assert help_ext_text(topic, options).splitlines()[0] == heading


def test_unknown_topic_raises():
    with pytest.raises(ValueError):
        help_ext_text("nope", MinerOptions())


def test_test_topic_shows_difficulty_default():
    text = help_ext_text("test", MinerOptions(benchmark_diff=1.0))
    assert "FLOAT [>0.0] Default 1\n" in text
    text = help_ext_text("test", MinerOptions(benchmark_diff=2.5))
    assert "FLOAT [>0.0] Default 2.5\n" in text


def test_cu_topic_uses_option_values():
    options = MinerOptions(cu_grid_size=4096, cu_block_size=64, cu_parallel_hash=8,
                           cu_streams=3)
    text = help_ext_text("cu", options)
    assert "INT [1 .. 131072] Default = 4096" in text
    assert "UINT {32,64,128,256} Default = 64" in text
    assert "UINT {1,2,4,8} Default = 8" in text
    assert "INT [1 .. 99] Default = 3" in text


def test_cl_topic_uses_option_values():
    options = MinerOptions(cl_global_work_size_multiplier=32768, cl_local_work_size=256)
    text = help_ext_text("cl", options)
    assert "--cl-global-work    UINT Default = 32768" in text
    assert "UINT {64,128,256} Default = 256" in text


def test_con_topic_lists_stratum_schemes():
    text = help_ext_text("con", MinerOptions())
    assert "stratum+tcp" in text
    assert "stratum3+ssl" in text
    assert "The special notation '-P exit' stops the failover loop." in text


def test_output_is_independent_of_topic_options_for_static_topics():
    a = help_ext_text("misc", MinerOptions())
    b = help_ext_text("misc", MinerOptions(cu_grid_size=1, benchmark_diff=3.0))
    assert a == b
    assert "--tstop             UINT[30 .. 100] Default = 40" in a