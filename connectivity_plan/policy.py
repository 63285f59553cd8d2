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


""" Builds the resource policy that restricts a private API to a known set of
    interface endpoints, and tracks the API that the policy is attached to.

    The policy is always two statements: a deny for requests that don't come
    through one of the endpoints, followed by an allow for requests that do.
    Both statements match the same set of endpoints, and the pair is replaced
    as a whole whenever that set changes.
    """

import threading

from loguru import logger

from .core import AccessPolicyStatement, ALLOW, DENY
from .endpoints import AccessEndpoint
from .errors import EndpointNotBound


ANY_PRINCIPAL = "*"
INVOKE_ACTIONS = ("execute-api:Invoke",)
API_RESOURCE_SCOPE = "execute-api:/*"
SOURCE_ENDPOINT_KEY = "aws:sourceVpce"

DEFAULT_BACKEND_URL = "https://jsonplaceholder.typicode.com/todos/1"
DEFAULT_STAGE = "prod"

_CONDITIONS = {
    DENY: "StringNotEquals",
    ALLOW: "StringEquals",
}


def synthesize(own_endpoint, external_endpoint_ids):
    """ Produces the deny/allow statement pair for an API reachable through its own
        endpoint plus the given external ones. The result depends only on the set
        of identities, not on the order in which they're provided.

        Endpoints may be passed as AccessEndpoint objects or as bare identities;
        an endpoint that hasn't been bound raises EndpointNotBound.
        """
    matched = frozenset([_identity(own_endpoint)] + [_identity(ep) for ep in external_endpoint_ids])
    return [
        AccessPolicyStatement(DENY, ANY_PRINCIPAL, INVOKE_ACTIONS, API_RESOURCE_SCOPE, matched),
        AccessPolicyStatement(ALLOW, ANY_PRINCIPAL, INVOKE_ACTIONS, API_RESOURCE_SCOPE, matched),
    ]


def to_document(statements):
    """ Renders statements as an IAM policy document.
        """
    return {
        "Version": "2012-10-17",
        "Statement": [_render_statement(stmt) for stmt in statements],
    }


def policy_endpoint_ids(document):
    """ Extracts the endpoint identities matched by a policy document. Returns
        one set per statement, in statement order.
        """
    result = []
    for stmt in document.get("Statement", []):
        for condition in stmt.get("Condition", {}).values():
            values = condition.get(SOURCE_ENDPOINT_KEY)
            if values is None:
                continue
            if isinstance(values, str):
                values = [values]
            result.append(frozenset(values))
    return result


def invoke_url(api_id, region, stage=DEFAULT_STAGE):
    return f"https://{api_id}.execute-api.{region}.amazonaws.com/{stage}/"


def execute_arn(api_id, region, account):
    return f"arn:aws:execute-api:{region}:{account}:{api_id}/*"


class ExposedApi:
    """ A private API, the endpoints bound to it, and its resource policy.

        Consumers come and go by replacing the whole policy. Replacement is a
        compare-and-swap against the external endpoint set the caller last saw,
        so two concurrent registrations can't overwrite each other.
        """

    def __init__(self, api_id, own_endpoint, external_endpoint_ids=(), backend_url=DEFAULT_BACKEND_URL):
        self.api_id = api_id
        self.own_endpoint_id = _identity(own_endpoint)
        self.backend_url = backend_url
        self._lock = threading.Lock()
        external = frozenset(_identity(ep) for ep in external_endpoint_ids)
        self._state = (external, synthesize(self.own_endpoint_id, external))

    @property
    def external_endpoint_ids(self):
        return self._state[0]

    @property
    def policy(self):
        return list(self._state[1])

    @property
    def bound_endpoint_ids(self):
        return self._state[1][0].matched_endpoint_ids

    def replace_policy(self, expected_external_ids, external_endpoint_ids):
        """ Installs a policy for a new external endpoint set, provided that the
            current set is still the one the caller expected. Returns False if
            someone else got there first.
            """
        external = frozenset(_identity(ep) for ep in external_endpoint_ids)
        statements = synthesize(self.own_endpoint_id, external)
        with self._lock:
            if self._state[0] != frozenset(expected_external_ids):
                return False
            self._state = (external, statements)
        logger.info(f"replaced policy for API {self.api_id}: {len(external) + 1} endpoint(s) allowed")
        return True

    def register_consumer(self, endpoint):
        endpoint_id = _identity(endpoint)
        while True:
            current = self.external_endpoint_ids
            if endpoint_id in current or self.replace_policy(current, current | {endpoint_id}):
                return self.policy

    def unregister_consumer(self, endpoint):
        endpoint_id = _identity(endpoint)
        while True:
            current = self.external_endpoint_ids
            if endpoint_id not in current or self.replace_policy(current, current - {endpoint_id}):
                return self.policy

    def endpoint_configuration(self):
        return {
            "types": ["PRIVATE"],
            "vpcEndpointIds": sorted(self.bound_endpoint_ids),
        }

    def document(self):
        return to_document(self.policy)


##
## Internals
##

def _identity(endpoint):
    if isinstance(endpoint, AccessEndpoint):
        return endpoint.require_id()
    if not endpoint:
        raise EndpointNotBound(repr(endpoint))
    return endpoint


def _render_statement(stmt):
    return {
        "Effect": stmt.effect,
        "Principal": stmt.principal,
        "Action": list(stmt.actions),
        "Resource": [stmt.resource_scope],
        "Condition": {
            _CONDITIONS[stmt.effect]: {
                SOURCE_ENDPOINT_KEY: sorted(stmt.matched_endpoint_ids),
            }
        },
    }
