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


""" Turns a declarative topology description into a resolved topology: the
    segments, endpoints, trust roles, links and routes that it implies, plus the
    dependency graph that builds them.

    A description is a dict (usually loaded from JSON or YAML) with the following
    keys; only "segments" is required:

        segments:     [{id, cidr, region, account, availability_zones?, subnets?}]
        endpoints:    [{segment, service?, name?, private_dns?}]
        trust_roles:  [{segment, trusted_account}]
        links:        [{from, to, after?: [{from, to}]}]
        api:          {segment, name?, external_endpoints?, backend_url?, stage?}
        probes:       [{segment, endpoint?, name?}]
        options:      {cidr_overlap?, max_workers?}
    """

import json

import yaml

from loguru import logger

from .core import (Segment, Subnet, API_POLICY, ENDPOINT, EXPOSED_API, ISOLATED, PEERING_LINK, PROBE_FUNCTION,
                   ROUTE, ROUTED_SUBNET_KINDS, SEGMENT, TRUST_ROLE)
from .endpoints import EndpointModel, https_from, service_name, API_GATEWAY_SERVICE
from .errors import InvalidTopology
from .graph import TopologyGraph, DEFAULT_MAX_WORKERS
from .peering import PeeringResolver, TrustRoles, account_root, link_id_for, link_state
from .policy import ExposedApi, execute_arn, invoke_url, synthesize, to_document, DEFAULT_BACKEND_URL, DEFAULT_STAGE
from .segments import SegmentRegistry, default_subnets, DEFAULT_AVAILABILITY_ZONES, OVERLAP_ERROR


PROBE_HANDLER = "connectivity_plan.probe.handler"
PROBE_TIMEOUT_SECONDS = 30


def load(path):
    """ Reads a topology description from a JSON or YAML file.
        """
    with open(path) as f:
        try:
            if str(path).endswith(".json"):
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
        except (ValueError, yaml.YAMLError) as ex:
            raise InvalidTopology(f"unable to parse {path}: {ex}") from ex
    if not isinstance(data, dict):
        raise InvalidTopology(f"{path} does not contain a topology description")
    return data


def step_id(kind, name):
    return f"{kind}:{name}"


def resolve(description):
    """ This is the entry point: validates a description and returns the resolved
        topology. All structural errors are raised here, before anything is
        handed to a provisioning engine.
        """
    options = description.get("options") or {}
    topology = ResolvedTopology(options.get("cidr_overlap", OVERLAP_ERROR),
                                options.get("max_workers", DEFAULT_MAX_WORKERS))
    topology._declare_segments(_list(description, "segments"))
    topology._declare_endpoints(_list(description, "endpoints"), description.get("api"))
    topology._declare_trust_roles(_list(description, "trust_roles"))
    topology._declare_links(_list(description, "links"))
    topology._build_segment_steps()
    topology._build_endpoint_steps()
    topology._build_trust_role_steps()
    topology._build_link_steps()
    if description.get("api"):
        topology._build_api_steps(description["api"])
    topology._build_probe_steps(_list(description, "probes"))
    logger.info(f"resolved topology: {len(topology.registry)} segment(s), {len(topology.graph)} step(s)")
    return topology


class ResolvedTopology:
    """ Everything derived from a description. The API object only exists once
        its construction step has completed.
        """

    def __init__(self, overlap_policy=OVERLAP_ERROR, max_workers=DEFAULT_MAX_WORKERS):
        self.registry = SegmentRegistry(overlap_policy)
        self.endpoints = EndpointModel(self.registry)
        self.trust_roles = TrustRoles(self.registry)
        self.peering = PeeringResolver(self.registry, self.trust_roles)
        self.graph = TopologyGraph()
        self.max_workers = max_workers
        self.api = None
        self.api_segment_id = None
        self.api_step_id = None
        self.api_policy_step_id = None
        self._link_after = {}

    def plan(self):
        return self.graph.plan()

    def execute(self, engine, completed=None):
        return self.graph.execute(engine, completed, self.max_workers)

    def register_consumer(self, endpoint_name):
        """ Adds an endpoint to the API's policy. The whole policy is replaced:
            returns the intents that carry the new policy to the engine, which
            are the API policy and, if its endpoint set changed, the API itself.
            """
        api = self._require_api()
        before = api.endpoint_configuration()
        api.register_consumer(self.endpoints.lookup(endpoint_name))
        return self._policy_replacement(before)

    def unregister_consumer(self, endpoint_name):
        api = self._require_api()
        before = api.endpoint_configuration()
        api.unregister_consumer(self.endpoints.lookup(endpoint_name))
        return self._policy_replacement(before)

    ##
    ## Model population
    ##

    def _declare_segments(self, items):
        if not items:
            raise InvalidTopology("a topology needs at least one segment")
        for item in items:
            segment_id = _required(item, "id", "segment")
            cidr = _required(item, "cidr", f"segment {segment_id}")
            region = _required(item, "region", f"segment {segment_id}")
            account = str(_required(item, "account", f"segment {segment_id}"))
            if item.get("subnets"):
                subnets = [_subnet(segment_id, index, subnet) for index, subnet in enumerate(item["subnets"])]
            else:
                subnets = default_subnets(segment_id, cidr, item.get("availability_zones", DEFAULT_AVAILABILITY_ZONES))
            self.registry.declare(Segment(segment_id, cidr, region, account, subnets))

    def _declare_endpoints(self, items, api):
        for item in items:
            self.endpoints.register(_required(item, "segment", "endpoint"),
                                    item.get("service", API_GATEWAY_SERVICE),
                                    item.get("name"),
                                    bool(item.get("private_dns", False)))
        if api:
            segment_id = _required(api, "segment", "api")
            if not self.endpoints.in_segment(segment_id):
                self.endpoints.register(segment_id, private_dns=True)

    def _declare_trust_roles(self, items):
        for item in items:
            self.trust_roles.register(_required(item, "segment", "trust role"),
                                      _required(item, "trusted_account", "trust role"))

    def _declare_links(self, items):
        for item in items:
            requester_id = _required(item, "from", "link")
            accepter_id = _required(item, "to", "link")
            link, _ = self.peering.link(requester_id, accepter_id)
            requester = self.registry.resolve(requester_id)
            for endpoint in self.endpoints.in_segment(accepter_id):
                endpoint.allow_ingress(https_from(requester.cidr, f"HTTPS from {requester_id}"))
            self._link_after[link.link_id] = [
                link_id_for(_required(dep, "from", "link dependency"), _required(dep, "to", "link dependency"))
                for dep in item.get("after", [])
            ]

    ##
    ## Graph construction
    ##

    def _build_segment_steps(self):
        for segment in self.registry:
            self.graph.add_step(step_id(SEGMENT, segment.segment_id), SEGMENT, segment.region, segment.account, {
                "cidr": segment.cidr,
                "enable_dns_hostnames": True,
                "enable_dns_support": True,
                "subnets": [{"id": s.subnet_id, "kind": s.kind, "cidr": s.cidr, "route_table": s.route_table_id}
                            for s in segment.subnets],
            })

    def _build_endpoint_steps(self):
        for endpoint in self.endpoints:
            segment = self.registry.resolve(endpoint.segment_id)
            seg_step = step_id(SEGMENT, segment.segment_id)
            self.graph.add_step(step_id(ENDPOINT, endpoint.name), ENDPOINT, segment.region, segment.account, {
                "vpc_id": self.graph.reference(seg_step, "vpc_id"),
                "service_name": service_name(segment.region, endpoint.service),
                "private_dns_enabled": endpoint.private_dns,
                "subnet_ids": [self.graph.reference(seg_step, "subnet_ids", s.subnet_id)
                               for s in segment.subnets if s.kind in ROUTED_SUBNET_KINDS],
                "ingress": [rule._asdict() for rule in endpoint.ingress_rules],
            }, on_complete=self._binder(endpoint.name))

    def _build_trust_role_steps(self):
        for role in self.trust_roles:
            segment = self.registry.resolve(role.segment_id)
            self.graph.add_step(step_id(TRUST_ROLE, role.role_id), TRUST_ROLE, segment.region, segment.account, {
                "assumed_by": account_root(role.trusted_account),
                "actions": list(role.actions),
                "resources": ["*"],
            }, depends_on=[step_id(SEGMENT, role.segment_id)])

    def _build_link_steps(self):
        for link in self.peering:
            requester = self.registry.resolve(link.requester_segment_id)
            link_step = step_id(PEERING_LINK, link.link_id)
            attributes = {
                "vpc_id": self.graph.reference(step_id(SEGMENT, link.requester_segment_id), "vpc_id"),
                "peer_vpc_id": self.graph.reference(step_id(SEGMENT, link.accepter_segment_id), "vpc_id"),
                "peer_region": link.accepter_region,
                "peer_owner_id": link.accepter_account,
            }
            if link.trust_role_id:
                attributes["peer_role_arn"] = self.graph.reference(step_id(TRUST_ROLE, link.trust_role_id), "role_arn")
            after = [step_id(PEERING_LINK, dep) for dep in self._link_after.get(link.link_id, [])]
            self.graph.add_step(link_step, PEERING_LINK, requester.region, requester.account, attributes,
                                depends_on=after, on_complete=self._link_tracker(link.link_id))
            for route in self.peering.routes_for(link.link_id):
                self.graph.add_step(step_id(ROUTE, f"{link.link_id}:{route.subnet_id}"), ROUTE, requester.region, requester.account, {
                    "route_table_id": self.graph.reference(step_id(SEGMENT, requester.segment_id), "route_table_ids", route.route_table_id),
                    "destination_cidr_block": route.destination_cidr,
                    "vpc_peering_connection_id": self.graph.reference(link_step, "peering_connection_id"),
                })

    def _build_api_steps(self, api):
        segment = self.registry.resolve(api["segment"])
        name = api.get("name") or f"{segment.segment_id}-api"
        stage = api.get("stage", DEFAULT_STAGE)
        backend_url = api.get("backend_url", DEFAULT_BACKEND_URL)
        own = _own_endpoint(self.endpoints.in_segment(segment.segment_id))
        if "external_endpoints" in api:
            external = [self.endpoints.lookup(ep_name) for ep_name in api["external_endpoints"]]
        else:
            external = [ep for ep in self.endpoints if ep.segment_id != segment.segment_id]

        def policy_outputs(_):
            # once the API exists its policy includes consumers registered since
            statements = self.api.policy if self.api else synthesize(own, external)
            return {
                "statements": statements,
                "document": to_document(statements),
                "endpoint_ids": sorted(statements[0].matched_endpoint_ids),
            }

        def prepare_policy(attributes):
            outputs = policy_outputs(attributes)
            return {"document": outputs["document"], "endpoint_ids": outputs["endpoint_ids"]}

        def api_created(outputs):
            api_id = outputs.get("rest_api_id")
            if not api_id:
                return None
            if self.api is None or self.api.api_id != api_id:
                self.api = ExposedApi(api_id, own, external, backend_url)
            return {
                "url": outputs.get("url") or invoke_url(api_id, segment.region, stage),
                "execute_arn": execute_arn(api_id, segment.region, segment.account),
            }

        policy_step = step_id(API_POLICY, name)
        self.api_policy_step_id = policy_step
        self.graph.add_step(policy_step, API_POLICY, segment.region, segment.account, {
            "own_endpoint_id": self.graph.reference(step_id(ENDPOINT, own.name), "endpoint_id"),
            "external_endpoint_ids": [self.graph.reference(step_id(ENDPOINT, ep.name), "endpoint_id") for ep in external],
        }, prepare=prepare_policy, on_complete=policy_outputs)

        self.api_segment_id = segment.segment_id
        self.api_step_id = step_id(EXPOSED_API, name)
        self.graph.add_step(self.api_step_id, EXPOSED_API, segment.region, segment.account, {
            "name": name,
            "endpoint_configuration": {
                "types": ["PRIVATE"],
                "vpc_endpoint_ids": self.graph.reference(policy_step, "endpoint_ids"),
            },
            "policy": self.graph.reference(policy_step, "document"),
            "methods": [{"http_method": "GET", "resource": "/",
                         "integration": {"type": "HTTP_PROXY", "uri": backend_url}}],
            "stage": stage,
        }, on_complete=api_created)

    def _build_probe_steps(self, items):
        for item in items:
            if not self.api_step_id:
                raise InvalidTopology("probes require an api to be declared")
            segment = self.registry.resolve(_required(item, "segment", "probe"))
            endpoint = self._probe_endpoint(segment.segment_id, item.get("endpoint"))
            name = item.get("name") or f"{segment.segment_id}-probe"
            seg_step = step_id(SEGMENT, segment.segment_id)
            environment = {"API_URL": self.graph.reference(self.api_step_id, "url")}
            if not endpoint.private_dns:
                environment["VPC_ENDPOINT_ID"] = self.graph.reference(step_id(ENDPOINT, endpoint.name), "endpoint_id")
            links = self.peering.links_from(segment.segment_id)
            depends_on = [step_id(PEERING_LINK, link.link_id) for link in links]
            depends_on += [step_id(ROUTE, f"{link.link_id}:{route.subnet_id}")
                           for link in links for route in self.peering.routes_for(link.link_id)]
            self.graph.add_step(step_id(PROBE_FUNCTION, name), PROBE_FUNCTION, segment.region, segment.account, {
                "handler": PROBE_HANDLER,
                "timeout": PROBE_TIMEOUT_SECONDS,
                "environment": environment,
                "vpc_id": self.graph.reference(seg_step, "vpc_id"),
                "subnet_ids": [self.graph.reference(seg_step, "subnet_ids", s.subnet_id)
                               for s in segment.subnets if s.kind in ROUTED_SUBNET_KINDS],
                "invoke_resource": self.graph.reference(self.api_step_id, "execute_arn"),
            }, depends_on=depends_on, prepare=self._endpoint_check(endpoint))

    ##
    ## Internals
    ##

    def _probe_endpoint(self, segment_id, endpoint_name):
        if endpoint_name:
            return self.endpoints.lookup(endpoint_name)
        for link in self.peering.links_from(segment_id):
            candidates = self.endpoints.in_segment(link.accepter_segment_id)
            if candidates:
                return candidates[0]
        candidates = self.endpoints.in_segment(segment_id) or self.endpoints.in_segment(self.api_segment_id)
        return candidates[0]

    def _binder(self, endpoint_name):
        def bind(outputs):
            endpoint_id = outputs.get("endpoint_id")
            if endpoint_id:
                self.endpoints.bind(endpoint_name, endpoint_id)
        return bind

    def _link_tracker(self, link_id):
        def track(outputs):
            state = outputs.get("state")
            if state:
                self.peering.mark(link_id, link_state(state))
        return track

    def _endpoint_check(self, endpoint):
        def check(attributes):
            endpoint.require_id()
            return attributes
        return check

    def _require_api(self):
        if self.api is None:
            raise InvalidTopology("the API has not been provisioned yet")
        return self.api

    def _policy_replacement(self, endpoint_configuration):
        # republishing the policy step's outputs updates every token that reads them
        self.graph.complete(self.api_policy_step_id, {})
        intents = [self.graph.resolved_intent(self.api_policy_step_id)]
        if self.api.endpoint_configuration() != endpoint_configuration:
            intents.append(self.graph.resolved_intent(self.api_step_id))
        return intents


def _own_endpoint(candidates):
    if not candidates:
        raise InvalidTopology("the API segment has no endpoint")
    for endpoint in candidates:
        if endpoint.private_dns:
            return endpoint
    return candidates[0]


def _subnet(segment_id, index, item):
    kind = item.get("kind", ISOLATED)
    subnet_id = item.get("id") or f"{segment_id}-{kind}-{index + 1}"
    return Subnet(segment_id, subnet_id, kind, item.get("route_table") or f"{subnet_id}-rt", item.get("cidr"))


def _list(description, key):
    value = description.get(key) or []
    if not isinstance(value, list):
        raise InvalidTopology(f"'{key}' must be a list")
    return value


def _required(item, key, what):
    if not isinstance(item, dict) or item.get(key) in (None, ""):
        raise InvalidTopology(f"{what} is missing '{key}'")
    return item[key]
