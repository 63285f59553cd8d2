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


""" Errors raised while resolving a topology. Everything except ProvisioningFailed
    is detected before the provisioning engine is called.
    """


class TopologyError(Exception):
    """ Base class for all resolver errors.
        """


class InvalidTopology(TopologyError):
    """ The declarative description is malformed or refers to something that
        it doesn't declare.
        """


class UnknownSegment(TopologyError):

    def __init__(self, segment_id):
        self.segment_id = segment_id
        super().__init__(f"unknown segment: {segment_id}")


class DuplicateSegment(TopologyError):

    def __init__(self, segment_id):
        self.segment_id = segment_id
        super().__init__(f"segment already declared: {segment_id}")


class InvalidCidr(TopologyError):

    def __init__(self, cidr, reason):
        self.cidr = cidr
        self.reason = reason
        super().__init__(f"invalid CIDR {cidr}: {reason}")


class CidrOverlap(TopologyError):
    """ Raised only for segments that are directly peered; other overlaps are
        reported as warnings.
        """

    def __init__(self, first_segment_id, second_segment_id):
        self.first_segment_id = first_segment_id
        self.second_segment_id = second_segment_id
        super().__init__(f"segments {first_segment_id} and {second_segment_id} have overlapping CIDRs and cannot be peered")


class MissingTrustRole(TopologyError):

    def __init__(self, accepter_segment_id, requester_account):
        self.accepter_segment_id = accepter_segment_id
        self.requester_account = requester_account
        super().__init__(f"segment {accepter_segment_id} has no trust role allowing account {requester_account} to request peering")


class EndpointNotBound(TopologyError):

    def __init__(self, endpoint_name):
        self.endpoint_name = endpoint_name
        super().__init__(f"endpoint {endpoint_name} has not been bound to a provisioned identity")


class UnresolvedReference(TopologyError):

    def __init__(self, step_id, output):
        self.step_id = step_id
        self.output = output
        super().__init__(f"reference to {step_id}.{output} read before the producing step completed")


class CyclicDependency(TopologyError):

    def __init__(self, step_ids):
        self.step_ids = list(step_ids)
        super().__init__(f"topology is not acyclic; steps involved: {', '.join(self.step_ids)}")


class ProvisioningFailed(TopologyError):
    """ Wraps a failure reported by the provisioning engine for one intent.
        """

    def __init__(self, intent_id, cause):
        self.intent_id = intent_id
        self.cause = cause
        super().__init__(f"provisioning failed for {intent_id}: {cause}")
