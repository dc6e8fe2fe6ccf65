"""Tests for pipeline specs, quality tiers and derive_spec()."""

import pytest
from pydantic import ValidationError

from arowss.errors import ConfigError
from arowss.pipeline_spec import (
    QUALITY_TIERS,
    LinkSample,
    PipelineSpec,
    apply_tier,
    derive_spec,
    make_spec,
    parse_endpoint,
    select_tier,
    tier_index,
)


def test_degraded_link_scenario(base_spec):
    spec = derive_spec(base_spec, LinkSample(packet_loss=0.4, timestamp=0.0))

    assert select_tier(LinkSample(packet_loss=0.4)).name == "degraded"
    assert (spec.width, spec.height) == (640, 360)
    assert spec.framerate == 15
    assert spec.bitrate == 500_000
    assert spec.target_address == base_spec.target_address
    assert spec.codec == base_spec.codec


def test_clean_link_keeps_base_spec(base_spec):
    spec = derive_spec(base_spec, LinkSample(packet_loss=0.0, signal_metric=-50.0))
    assert spec == base_spec


def test_worst_case_sample_maps_to_minimal(base_spec):
    spec = derive_spec(base_spec, LinkSample.worst(timestamp=0.0))
    assert select_tier(LinkSample.worst()).name == "minimal"
    assert (spec.width, spec.height, spec.framerate) == (426, 240, 15)
    assert spec.bitrate == 250_000


def test_output_never_increases_with_loss(base_spec):
    losses = [i / 100 for i in range(0, 101)]
    specs = [derive_spec(base_spec, LinkSample(packet_loss=p, timestamp=0.0)) for p in losses]
    for prev, nxt in zip(specs, specs[1:]):
        assert nxt.bitrate <= prev.bitrate
        assert nxt.width <= prev.width
        assert nxt.height <= prev.height
        assert nxt.framerate <= prev.framerate


def test_output_never_increases_as_signal_weakens(base_spec):
    levels = list(range(-40, -100, -1))
    specs = [
        derive_spec(base_spec, LinkSample(packet_loss=0.0, signal_metric=float(s), timestamp=0.0))
        for s in levels
    ]
    for prev, nxt in zip(specs, specs[1:]):
        assert nxt.bitrate <= prev.bitrate
        assert nxt.width * nxt.height <= prev.width * prev.height


def test_worst_of_loss_and_signal_wins():
    assert select_tier(LinkSample(packet_loss=0.01, signal_metric=-80.0)).name == "degraded"
    assert select_tier(LinkSample(packet_loss=0.3, signal_metric=-50.0)).name == "degraded"
    assert select_tier(LinkSample(packet_loss=0.1, signal_metric=None)).name == "reduced"


def test_derive_spec_is_idempotent(base_spec):
    sample = LinkSample(packet_loss=0.12, signal_metric=-70.0, timestamp=1.0)
    assert derive_spec(base_spec, sample) == derive_spec(base_spec, sample)


def test_tiers_are_ordered_and_non_increasing():
    names = [t.name for t in QUALITY_TIERS]
    assert names == ["full", "reduced", "degraded", "minimal"]
    for better, worse in zip(QUALITY_TIERS, QUALITY_TIERS[1:]):
        assert worse.resolution_scale <= better.resolution_scale
        assert worse.framerate_scale <= better.framerate_scale
        assert worse.bitrate_scale <= better.bitrate_scale
    assert tier_index("degraded") == 2


def test_apply_tier_keeps_dimensions_even():
    spec = PipelineSpec(width=1918, height=1078, framerate=25, bitrate=3_000_000)
    scaled = apply_tier(spec, QUALITY_TIERS[1])
    assert scaled.width % 2 == 0 and scaled.height % 2 == 0


def test_spec_is_immutable_and_compared_by_value(base_spec):
    copy = PipelineSpec(**base_spec.model_dump())
    assert copy == base_spec
    with pytest.raises(ValidationError):
        base_spec.width = 640


@pytest.mark.parametrize(
    "fields",
    [
        {"width": 0},
        {"height": -1},
        {"framerate": 0},
        {"bitrate": 0},
        {"target_address": "no-port"},
        {"target_address": "192.168.199.1:70000"},
        {"target_address": "999.1.1.1:3900"},
        {"ttl": 0},
    ],
)
def test_invalid_specs_raise_config_error(base_spec, fields):
    values = base_spec.model_dump()
    values.update(fields)
    with pytest.raises(ConfigError):
        make_spec(**values)


def test_parse_endpoint_forms():
    assert parse_endpoint("192.168.199.1:3900") == ("192.168.199.1", 3900)
    assert parse_endpoint("ground.local:5000") == ("ground.local", 5000)
    assert parse_endpoint("[fe80::1]:3900") == ("fe80::1", 3900)
    with pytest.raises(ValueError):
        parse_endpoint("[fe80::1]")
