# Copyright 2023, Chariot Solutions
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.



import pytest

from connectivity_plan.core import Segment, Subnet, ISOLATED, PUBLIC
from connectivity_plan.errors import CidrOverlap, DuplicateSegment, InvalidCidr, InvalidTopology, UnknownSegment
from connectivity_plan.segments import SegmentRegistry, default_subnets, parse_cidr, OVERLAP_IGNORE, OVERLAP_WARN


def segment(segment_id, cidr, region="us-east-2", account="111111111111", subnets=None):
    if subnets is None:
        subnets = default_subnets(segment_id, cidr)
    return Segment(segment_id, cidr, region, account, subnets)


def test_declare_and_resolve():
    registry = SegmentRegistry()
    declared = registry.declare(segment("provider", "10.2.0.0/16"))
    assert registry.resolve("provider") == declared
    assert "provider" in registry
    assert len(registry) == 1
    assert isinstance(declared.subnets, tuple)


def test_duplicate_segment():
    registry = SegmentRegistry()
    registry.declare(segment("provider", "10.2.0.0/16"))
    with pytest.raises(DuplicateSegment) as ex:
        registry.declare(segment("provider", "10.3.0.0/16"))
    assert ex.value.segment_id == "provider"


def test_unknown_segment():
    registry = SegmentRegistry()
    with pytest.raises(UnknownSegment) as ex:
        registry.resolve("nowhere")
    assert ex.value.segment_id == "nowhere"


@pytest.mark.parametrize("cidr", ["not-a-cidr", "10.2.0.0/33", "10.2.0.1/16", "10.2.0.1/32", None])
def test_invalid_cidr(cidr):
    with pytest.raises(InvalidCidr):
        parse_cidr(cidr)


def test_declare_rejects_invalid_cidr():
    registry = SegmentRegistry()
    with pytest.raises(InvalidCidr):
        registry.declare(Segment("bad", "10.2.0.0/33", "us-east-2", "111111111111", []))
    assert "bad" not in registry


def test_default_subnets_split_the_segment():
    subnets = default_subnets("consumer", "10.1.0.0/16", 3)
    assert subnets == [
        Subnet("consumer", "consumer-isolated-1", ISOLATED, "consumer-isolated-1-rt", "10.1.0.0/18"),
        Subnet("consumer", "consumer-isolated-2", ISOLATED, "consumer-isolated-2-rt", "10.1.64.0/18"),
        Subnet("consumer", "consumer-isolated-3", ISOLATED, "consumer-isolated-3-rt", "10.1.128.0/18"),
    ]


def test_default_subnets_two_zones():
    subnets = default_subnets("provider", "10.2.0.0/16")
    assert [s.cidr for s in subnets] == ["10.2.0.0/17", "10.2.128.0/17"]


def test_default_subnets_need_room():
    with pytest.raises(InvalidCidr):
        default_subnets("tiny", "10.0.0.0/30", 4)
    with pytest.raises(InvalidTopology):
        default_subnets("none", "10.0.0.0/16", 0)


def test_subnet_must_be_inside_segment():
    registry = SegmentRegistry()
    subnets = [Subnet("provider", "outside", ISOLATED, "outside-rt", "10.9.0.0/24")]
    with pytest.raises(InvalidCidr):
        registry.declare(segment("provider", "10.2.0.0/16", subnets=subnets))


def test_subnet_must_belong_to_segment():
    registry = SegmentRegistry()
    subnets = [Subnet("other", "stray", PUBLIC, "stray-rt", None)]
    with pytest.raises(InvalidTopology):
        registry.declare(segment("provider", "10.2.0.0/16", subnets=subnets))


def test_overlap_tolerated_between_unpeered_segments():
    registry = SegmentRegistry()
    registry.declare(segment("accepter", "10.0.0.0/16"))
    registry.declare(segment("provider", "10.0.0.0/16"))
    assert registry.overlapping_pairs() == [("accepter", "provider")]


def test_overlap_rejected_for_peered_segments():
    registry = SegmentRegistry()
    registry.declare(segment("accepter", "10.0.0.0/16"))
    registry.declare(segment("provider", "10.0.0.0/16"))
    with pytest.raises(CidrOverlap):
        registry.check_peerable("accepter", "provider")


def test_overlap_policy_is_configurable():
    for policy in (OVERLAP_WARN, OVERLAP_IGNORE):
        registry = SegmentRegistry(policy)
        registry.declare(segment("accepter", "10.0.0.0/16"))
        registry.declare(segment("provider", "10.0.128.0/17"))
        assert registry.check_peerable("accepter", "provider") == True


def test_no_overlap():
    registry = SegmentRegistry()
    registry.declare(segment("consumer", "10.1.0.0/16"))
    registry.declare(segment("provider", "10.2.0.0/16"))
    assert registry.check_peerable("consumer", "provider") == False
    assert registry.overlapping_pairs() == []


def test_unknown_overlap_policy():
    with pytest.raises(InvalidTopology):
        SegmentRegistry("sometimes")
