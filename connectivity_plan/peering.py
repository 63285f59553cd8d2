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


""" Computes peering links between segments, the trust roles that they need, and
    the routes that make them usable.

    Routes are only added on the requester side. The accepter agrees to accept
    the connection, but return routes into the requester have to be declared
    separately (by a link in the other direction, or by hand).
    """

from loguru import logger

from .core import PeeringLink, Route, TrustRole, ACCEPTED, FAILED, REQUESTED, ROUTED_SUBNET_KINDS
from .errors import InvalidTopology, MissingTrustRole


PEERING_ACCEPT_ACTIONS = ("ec2:AcceptVpcPeeringConnection", "ec2:ModifyVpcPeeringConnectionOptions")

LINK_STATES = (REQUESTED, ACCEPTED, FAILED)

# status codes of an EC2 VPC peering connection
PEERING_STATUS_CODES = {
    "initiating-request": REQUESTED,
    "pending-acceptance": REQUESTED,
    "provisioning": REQUESTED,
    "active": ACCEPTED,
    "failed": FAILED,
    "rejected": FAILED,
    "expired": FAILED,
    "deleted": FAILED,
    "deleting": FAILED,
}


def link_state(status):
    """ Translates a state reported by a provisioning engine into a link state.
        Engines may report either a link state or the raw EC2 status code.
        """
    if status in LINK_STATES:
        return status
    try:
        return PEERING_STATUS_CODES[status]
    except KeyError:
        raise InvalidTopology(f"unknown peering link state: {status}") from None


def account_root(account):
    """ The principal that lets any identity in an account assume a role.
        """
    return f"arn:aws:iam::{account}:root"


def requires_trust(requester, accepter):
    return requester.account != accepter.account or requester.region != accepter.region


class TrustRoles:
    """ The trust roles published by accepter segments. Each role lets a single
        foreign account accept peering requests into the segment.
        """

    def __init__(self, registry):
        self._registry = registry
        self._roles = {}

    def register(self, segment_id, trusted_account, role_id=None):
        self._registry.resolve(segment_id)
        key = (segment_id, str(trusted_account))
        existing = self._roles.get(key)
        if existing:
            return existing
        role_id = role_id or f"{segment_id}-accept-peering-{trusted_account}"
        role = TrustRole(role_id, segment_id, str(trusted_account), PEERING_ACCEPT_ACTIONS)
        self._roles[key] = role
        logger.debug(f"trust role {role_id} lets account {trusted_account} peer with {segment_id}")
        return role

    def find(self, segment_id, trusted_account):
        return self._roles.get((segment_id, str(trusted_account)))

    def __iter__(self):
        return iter(self._roles.values())


class PeeringResolver:
    """ Creates peering links on request. A link and its routes are recorded
        together, or not at all.
        """

    def __init__(self, registry, trust_roles):
        self._registry = registry
        self._trust_roles = trust_roles
        self._links = {}
        self._routes = {}

    def link(self, requester_id, accepter_id):
        """ Requests a link from one segment to another, and returns the link along
            with the requester-side routes that use it. Asking for the same link
            again returns the existing one.
            """
        requester = self._registry.resolve(requester_id)
        accepter = self._registry.resolve(accepter_id)
        if requester_id == accepter_id:
            raise InvalidTopology(f"segment {requester_id} can't be peered with itself")

        link_id = link_id_for(requester_id, accepter_id)
        if link_id in self._links:
            return self._links[link_id], self._routes[link_id]

        trust_role_id = None
        if requires_trust(requester, accepter):
            role = self._trust_roles.find(accepter_id, requester.account)
            if not role:
                raise MissingTrustRole(accepter_id, requester.account)
            trust_role_id = role.role_id
        self._registry.check_peerable(requester_id, accepter_id)

        link = PeeringLink(link_id, requester_id, accepter_id, accepter.region, accepter.account, trust_role_id, REQUESTED)
        routes = tuple(Route(subnet.subnet_id, subnet.route_table_id, accepter.cidr, link_id)
                       for subnet in requester.subnets
                       if subnet.kind in ROUTED_SUBNET_KINDS)

        self._links[link_id] = link
        self._routes[link_id] = routes
        logger.info(f"requested peering {link_id} with {len(routes)} route(s) to {accepter.cidr}")
        return link, routes

    def lookup(self, link_id):
        try:
            return self._links[link_id]
        except KeyError:
            raise InvalidTopology(f"unknown peering link: {link_id}") from None

    def routes_for(self, link_id):
        self.lookup(link_id)
        return self._routes[link_id]

    def mark(self, link_id, state):
        """ Records a state reported by the provisioning engine.
            """
        if state not in LINK_STATES:
            raise InvalidTopology(f"unknown peering link state: {state}")
        link = self.lookup(link_id)._replace(state=state)
        self._links[link_id] = link
        logger.info(f"peering {link_id} is now {state}")
        return link

    def links_into(self, segment_id):
        return [link for link in self._links.values() if link.accepter_segment_id == segment_id]

    def links_from(self, segment_id):
        return [link for link in self._links.values() if link.requester_segment_id == segment_id]

    def routes(self):
        return [route for routes in self._routes.values() for route in routes]

    def __iter__(self):
        return iter(self._links.values())


def link_id_for(requester_id, accepter_id):
    return f"pcx-{requester_id}-to-{accepter_id}"
