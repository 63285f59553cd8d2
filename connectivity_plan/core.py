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


""" Defines core data classes for the topology resolver.
    """

from collections import namedtuple

Segment = namedtuple('Segment', ['segment_id', 'cidr', 'region', 'account', 'subnets'])

Subnet = namedtuple('Subnet', ['segment_id', 'subnet_id', 'kind', 'route_table_id', 'cidr'])

TrustRole = namedtuple('TrustRole', ['role_id', 'segment_id', 'trusted_account', 'actions'])

PeeringLink = namedtuple('PeeringLink', ['link_id', 'requester_segment_id', 'accepter_segment_id',
                                         'accepter_region', 'accepter_account', 'trust_role_id', 'state'])

Route = namedtuple('Route', ['subnet_id', 'route_table_id', 'destination_cidr', 'via_peering_link_id'])

IngressRule = namedtuple('IngressRule', ['protocol', 'from_port', 'to_port', 'cidr', 'description'])

AccessPolicyStatement = namedtuple('AccessPolicyStatement', ['effect', 'principal', 'actions', 'resource_scope', 'matched_endpoint_ids'])

ResourceIntent = namedtuple('ResourceIntent', ['intent_id', 'kind', 'region', 'account', 'attributes', 'depends_on'])


##
## Subnet kinds; only isolated and private subnets receive peering routes
##

ISOLATED = "isolated"
PRIVATE = "private"
PUBLIC = "public"

SUBNET_KINDS = (ISOLATED, PRIVATE, PUBLIC)
ROUTED_SUBNET_KINDS = (ISOLATED, PRIVATE)


##
## Access endpoints
##

PRIVATE_DNS_ENABLED = "private-enabled"
PRIVATE_DNS_DISABLED = "private-disabled"

PENDING = "pending"
BOUND = "bound"

HTTPS_PORT = 443


##
## Peering link states
##

REQUESTED = "requested"
ACCEPTED = "accepted"
FAILED = "failed"


##
## Policy effects
##

DENY = "Deny"
ALLOW = "Allow"


##
## Construction step kinds, in the order a plan builds them
##

SEGMENT = "segment"
ENDPOINT = "endpoint"
TRUST_ROLE = "trust_role"
PEERING_LINK = "peering_link"
ROUTE = "route"
API_POLICY = "api_policy"
EXPOSED_API = "exposed_api"
PROBE_FUNCTION = "probe_function"

STEP_KINDS = (SEGMENT, ENDPOINT, TRUST_ROLE, PEERING_LINK, ROUTE, API_POLICY, EXPOSED_API, PROBE_FUNCTION)
