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


""" Interface endpoints exposed by a segment. An endpoint is declared before it
    exists, and only gets an identity once the provisioning engine reports one.
    """

from loguru import logger

from .core import IngressRule, BOUND, HTTPS_PORT, PENDING, PRIVATE_DNS_DISABLED, PRIVATE_DNS_ENABLED
from .errors import EndpointNotBound, InvalidTopology


API_GATEWAY_SERVICE = "execute-api"


def service_name(region, service=API_GATEWAY_SERVICE):
    """ Returns the fully-qualified name that AWS uses for an interface endpoint service.
        """
    return f"com.amazonaws.{region}.{service}"


def rewrite_hostname(hostname, endpoint_id):
    """ Inserts an endpoint ID into the first label of a hostname. This is how a
        client reaches a private API through an endpoint that doesn't have private
        DNS enabled: "abc123.execute-api..." becomes "abc123-vpce-0123.execute-api...".
        """
    if not endpoint_id:
        return hostname
    subdomain, sep, rest = hostname.partition(".")
    return f"{subdomain}-{endpoint_id}{sep}{rest}"


def https_from(cidr, description):
    return IngressRule("tcp", HTTPS_PORT, HTTPS_PORT, cidr, description)


class AccessEndpoint:
    """ An interface endpoint in a segment. Starts out pending; transitions to
        bound when given the identity assigned by the provisioning engine.
        """

    def __init__(self, name, segment_id, service, dns_mode, ingress_rules=()):
        self.name = name
        self.segment_id = segment_id
        self.service = service
        self.dns_mode = dns_mode
        self.ingress_rules = list(ingress_rules)
        self.endpoint_id = None
        self.state = PENDING

    @property
    def is_bound(self):
        return self.state == BOUND

    @property
    def private_dns(self):
        return self.dns_mode == PRIVATE_DNS_ENABLED

    def bind(self, endpoint_id):
        if not endpoint_id:
            raise InvalidTopology(f"endpoint {self.name} can't be bound to an empty identity")
        if self.is_bound and self.endpoint_id != endpoint_id:
            raise InvalidTopology(f"endpoint {self.name} is already bound to {self.endpoint_id}")
        self.endpoint_id = endpoint_id
        self.state = BOUND
        return self

    def require_id(self):
        """ Returns the bound identity; a pending endpoint can't be used in a policy
            or a client configuration.
            """
        if not self.is_bound:
            raise EndpointNotBound(self.name)
        return self.endpoint_id

    def allow_ingress(self, rule):
        if rule not in self.ingress_rules:
            self.ingress_rules.append(rule)
        return self

    def client_hostname(self, hostname):
        """ The hostname a client in a peered segment must use to reach an API through
            this endpoint. With private DNS the API's own hostname resolves correctly.
            """
        if self.private_dns:
            return hostname
        return rewrite_hostname(hostname, self.require_id())

    def __repr__(self):
        return f"AccessEndpoint({self.name}, {self.segment_id}, {self.service}, {self.state}, {self.endpoint_id})"


class EndpointModel:
    """ Tracks every endpoint declared by a topology, keyed by name.
        """

    def __init__(self, registry):
        self._registry = registry
        self._endpoints = {}

    def register(self, segment_id, service=API_GATEWAY_SERVICE, name=None, private_dns=False, ingress_rules=None):
        """ Declares an endpoint in an existing segment. Unless told otherwise the
            endpoint accepts HTTPS from its own segment.
            """
        segment = self._registry.resolve(segment_id)
        name = name or f"{segment_id}-{service}"
        if name in self._endpoints:
            raise InvalidTopology(f"endpoint already declared: {name}")
        if ingress_rules is None:
            ingress_rules = [https_from(segment.cidr, f"HTTPS from {segment_id}")]
        dns_mode = PRIVATE_DNS_ENABLED if private_dns else PRIVATE_DNS_DISABLED
        endpoint = AccessEndpoint(name, segment_id, service, dns_mode, ingress_rules)
        self._endpoints[name] = endpoint
        logger.debug(f"registered endpoint {name} for {service} in {segment_id}")
        return endpoint

    def lookup(self, name):
        try:
            return self._endpoints[name]
        except KeyError:
            raise InvalidTopology(f"unknown endpoint: {name}") from None

    def bind(self, name, endpoint_id):
        endpoint = self.lookup(name).bind(endpoint_id)
        logger.info(f"endpoint {name} bound to {endpoint_id}")
        return endpoint

    def in_segment(self, segment_id):
        return [ep for ep in self._endpoints.values() if ep.segment_id == segment_id]

    def bound_ids(self, names):
        return frozenset(self.lookup(name).require_id() for name in names)

    def __contains__(self, name):
        return name in self._endpoints

    def __iter__(self):
        return iter(self._endpoints.values())
