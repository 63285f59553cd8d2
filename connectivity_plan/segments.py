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


""" The segment registry: holds the networks declared by a topology, and validates
    their CIDRs.
    """

import ipaddress
import math

from loguru import logger

from .core import Segment, Subnet, ISOLATED, SUBNET_KINDS
from .errors import CidrOverlap, DuplicateSegment, InvalidCidr, InvalidTopology, UnknownSegment


OVERLAP_ERROR = "error"
OVERLAP_WARN = "warn"
OVERLAP_IGNORE = "ignore"

OVERLAP_POLICIES = (OVERLAP_ERROR, OVERLAP_WARN, OVERLAP_IGNORE)

DEFAULT_AVAILABILITY_ZONES = 2


def parse_cidr(cidr):
    """ Parses and validates a CIDR block. Host bits must be clear, and the block
        must contain more than one address.
        """
    try:
        network = ipaddress.ip_network(cidr)
    except (ValueError, TypeError) as ex:
        raise InvalidCidr(cidr, str(ex)) from ex
    if network.prefixlen == network.max_prefixlen:
        raise InvalidCidr(cidr, "block is zero-sized")
    return network


def default_subnets(segment_id, cidr, count=DEFAULT_AVAILABILITY_ZONES, kind=ISOLATED):
    """ Lays out one subnet per availability zone by splitting the segment's CIDR
        into equal blocks. Each subnet gets its own route table.
        """
    if count < 1:
        raise InvalidTopology(f"segment {segment_id} needs at least one availability zone")
    network = parse_cidr(cidr)
    new_prefix = network.prefixlen + max(1, math.ceil(math.log2(count)))
    if new_prefix >= network.max_prefixlen:
        raise InvalidCidr(cidr, f"too small to hold {count} subnets")
    result = []
    for index, block in enumerate(network.subnets(new_prefix=new_prefix)):
        if index == count:
            break
        subnet_id = f"{segment_id}-{kind}-{index + 1}"
        result.append(Subnet(segment_id, subnet_id, kind, f"{subnet_id}-rt", str(block)))
    return result


def cidrs_overlap(first, second):
    return parse_cidr(first).overlaps(parse_cidr(second))


class SegmentRegistry:
    """ Holds the segments of a single topology run. Segments are immutable once
        declared, and can't be removed: redeploying means building a new registry.
        """

    def __init__(self, overlap_policy=OVERLAP_ERROR):
        if overlap_policy not in OVERLAP_POLICIES:
            raise InvalidTopology(f"unsupported CIDR overlap policy: {overlap_policy}")
        self.overlap_policy = overlap_policy
        self._segments = {}

    def declare(self, segment):
        if segment.segment_id in self._segments:
            raise DuplicateSegment(segment.segment_id)
        network = parse_cidr(segment.cidr)
        subnets = tuple(segment.subnets or ())
        for subnet in subnets:
            self._check_subnet(segment, network, subnet)
        segment = segment._replace(subnets=subnets)
        if self.overlap_policy != OVERLAP_IGNORE:
            for other in self._segments.values():
                if network.overlaps(parse_cidr(other.cidr)):
                    logger.warning(f"segment {segment.segment_id} ({segment.cidr}) overlaps {other.segment_id} ({other.cidr}); "
                                   f"tolerated unless the two are peered")
        self._segments[segment.segment_id] = segment
        logger.debug(f"declared segment {segment.segment_id} {segment.cidr} in {segment.region}/{segment.account}")
        return segment

    def resolve(self, segment_id):
        try:
            return self._segments[segment_id]
        except KeyError:
            raise UnknownSegment(segment_id) from None

    def network(self, segment_id):
        return parse_cidr(self.resolve(segment_id).cidr)

    def check_peerable(self, first_id, second_id):
        """ Verifies that two segments can be directly peered. Returns True if
            their CIDRs overlap and the overlap policy tolerates it.
            """
        if not self.network(first_id).overlaps(self.network(second_id)):
            return False
        if self.overlap_policy == OVERLAP_ERROR:
            raise CidrOverlap(first_id, second_id)
        if self.overlap_policy == OVERLAP_WARN:
            logger.warning(f"peering {first_id} with {second_id} despite overlapping CIDRs")
        return True

    def overlapping_pairs(self):
        segments = list(self._segments.values())
        result = []
        for index, first in enumerate(segments):
            for second in segments[index + 1:]:
                if cidrs_overlap(first.cidr, second.cidr):
                    result.append((first.segment_id, second.segment_id))
        return result

    def __contains__(self, segment_id):
        return segment_id in self._segments

    def __iter__(self):
        return iter(self._segments.values())

    def __len__(self):
        return len(self._segments)

    ##
    ## Internals
    ##

    def _check_subnet(self, segment, network, subnet):
        if subnet.segment_id != segment.segment_id:
            raise InvalidTopology(f"subnet {subnet.subnet_id} belongs to {subnet.segment_id}, not {segment.segment_id}")
        if subnet.kind not in SUBNET_KINDS:
            raise InvalidTopology(f"subnet {subnet.subnet_id} has unknown kind: {subnet.kind}")
        if subnet.cidr and not parse_cidr(subnet.cidr).subnet_of(network):
            raise InvalidCidr(subnet.cidr, f"not contained in segment {segment.segment_id} ({segment.cidr})")
