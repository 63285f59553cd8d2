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


""" Static check that a resolved topology lets a segment reach an endpoint: the
    source needs a route to the endpoint's segment, and the endpoint's ingress
    rules have to admit the source.
    """

import ipaddress

from .core import HTTPS_PORT, ROUTED_SUBNET_KINDS


def check(topology, source_segment_id, endpoint_name, port=HTTPS_PORT):
    """ Determines whether resources in the source segment can connect to the
        named endpoint on the given port.

        The result can either be definitive success, definitive failure, or a
        partial misconfiguration (eg, the endpoint admits the source CIDR but
        not the desired port).
        """
    source = topology.registry.resolve(source_segment_id)
    endpoint = topology.endpoints.lookup(endpoint_name)
    target = topology.registry.resolve(endpoint.segment_id)
    evaluation = ConnectivityEvaluation()
    if source.segment_id != target.segment_id:
        _check_routes(source, target, topology.peering.routes(), evaluation)
        if evaluation.failure:
            return evaluation
    _check_ingress_rules(source.cidr, endpoint, port, evaluation)
    return evaluation


class ConnectivityEvaluation:
    """ Tracks the definitive success/failure of an evaluated connection,
        along with additional context for "near misses".
        """

    def __init__(self):
        self.success = None
        self.failure = None
        self.context = set()

    def mark_success(self, msg):
        self.success = msg

    def mark_failure(self, msg):
        self.failure = msg

    def add_context(self, msg):
        self.context.add(msg)


##
## Internals
##

def _check_routes(source, target, routes, evaluation):
    target_addr = ipaddress.ip_network(target.cidr)
    routes_by_subnet = {}
    for route in routes:
        routes_by_subnet.setdefault(route.subnet_id, []).append(route)
    routed_subnets = [s for s in source.subnets if s.kind in ROUTED_SUBNET_KINDS]
    if not routed_subnets:
        evaluation.mark_failure(f"{source.segment_id} has no isolated or private subnets")
        return
    for subnet in routed_subnets:
        if not _has_route(routes_by_subnet.get(subnet.subnet_id, []), target_addr):
            evaluation.mark_failure(f"subnet {subnet.subnet_id} has no route to {target.cidr}")
            return
    evaluation.add_context(f"{source.segment_id} routes to {target.segment_id} ({target.cidr}) over peering")


def _has_route(routes, target_addr):
    for route in routes:
        if target_addr.subnet_of(ipaddress.ip_network(route.destination_cidr)):
            return True
    return False


def _check_ingress_rules(src_cidr, endpoint, port, evaluation):
    src_addr = ipaddress.ip_network(src_cidr)
    near_miss = False
    for rule in endpoint.ingress_rules:
        rule_addr = ipaddress.ip_network(rule.cidr)
        if src_addr.subnet_of(rule_addr) and rule.from_port <= port <= rule.to_port:
            evaluation.mark_success(f"endpoint {endpoint.name} has rule that allows {src_cidr} on port {port}")
            return
        elif src_addr.subnet_of(rule_addr):
            evaluation.add_context(f"endpoint {endpoint.name} has rule that allows {src_cidr} but not on port {port}")
            near_miss = True
    if not near_miss:
        evaluation.mark_failure(f"no ingress rule on endpoint {endpoint.name} allows {src_cidr} on port {port}")
