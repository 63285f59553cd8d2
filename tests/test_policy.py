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



import itertools
import threading

import pytest

from connectivity_plan.core import ALLOW, DENY, PRIVATE_DNS_DISABLED, PRIVATE_DNS_ENABLED
from connectivity_plan.endpoints import AccessEndpoint
from connectivity_plan.errors import EndpointNotBound
from connectivity_plan.policy import (ExposedApi, execute_arn, invoke_url, policy_endpoint_ids, synthesize, to_document,
                                      API_RESOURCE_SCOPE, INVOKE_ACTIONS)


def test_two_statements_deny_then_allow():
    policy = synthesize("vpce-p", ["vpce-a"])
    assert [stmt.effect for stmt in policy] == [DENY, ALLOW]
    for stmt in policy:
        assert stmt.principal == "*"
        assert stmt.actions == INVOKE_ACTIONS
        assert stmt.resource_scope == API_RESOURCE_SCOPE
        assert stmt.matched_endpoint_ids == frozenset(["vpce-p", "vpce-a"])


def test_synthesize_is_order_independent():
    external = ["vpce-a", "vpce-b", "vpce-c"]
    expected = synthesize("vpce-p", external)
    for permutation in itertools.permutations(external):
        assert synthesize("vpce-p", permutation) == expected
    assert synthesize("vpce-p", set(external)) == expected


def test_own_endpoint_only():
    policy = synthesize("vpce-p", [])
    assert policy[0].matched_endpoint_ids == frozenset(["vpce-p"])
    assert policy[1].matched_endpoint_ids == frozenset(["vpce-p"])


def test_pending_endpoints_cannot_be_used():
    own = AccessEndpoint("provider-execute-api", "provider", "execute-api", PRIVATE_DNS_ENABLED)
    external = AccessEndpoint("accepter-execute-api", "accepter", "execute-api", PRIVATE_DNS_DISABLED)
    with pytest.raises(EndpointNotBound) as ex:
        synthesize(own, [])
    assert ex.value.endpoint_name == "provider-execute-api"
    own.bind("vpce-p")
    with pytest.raises(EndpointNotBound):
        synthesize(own, [external])
    external.bind("vpce-a")
    assert synthesize(own, [external]) == synthesize("vpce-p", ["vpce-a"])
    with pytest.raises(EndpointNotBound):
        synthesize(None, [])


def test_policy_document():
    document = to_document(synthesize("vpce-p", ["vpce-a"]))
    assert document == {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Deny",
                "Principal": "*",
                "Action": ["execute-api:Invoke"],
                "Resource": ["execute-api:/*"],
                "Condition": {"StringNotEquals": {"aws:sourceVpce": ["vpce-a", "vpce-p"]}},
            },
            {
                "Effect": "Allow",
                "Principal": "*",
                "Action": ["execute-api:Invoke"],
                "Resource": ["execute-api:/*"],
                "Condition": {"StringEquals": {"aws:sourceVpce": ["vpce-a", "vpce-p"]}},
            },
        ],
    }
    assert policy_endpoint_ids(document) == [frozenset(["vpce-a", "vpce-p"]), frozenset(["vpce-a", "vpce-p"])]


def test_policy_endpoint_ids_accepts_single_value():
    document = {"Statement": [{"Condition": {"StringEquals": {"aws:sourceVpce": "vpce-p"}}}, {"Effect": "Allow"}]}
    assert policy_endpoint_ids(document) == [frozenset(["vpce-p"])]


def test_register_then_unregister_restores_policy():
    api = ExposedApi("abc123", "vpce-p", ["vpce-a"])
    before = api.policy
    api.register_consumer("vpce-c")
    assert api.bound_endpoint_ids == frozenset(["vpce-p", "vpce-a", "vpce-c"])
    assert api.policy[1].matched_endpoint_ids == api.bound_endpoint_ids
    api.unregister_consumer("vpce-c")
    assert api.policy == before
    assert api.external_endpoint_ids == frozenset(["vpce-a"])


def test_registration_is_idempotent():
    api = ExposedApi("abc123", "vpce-p")
    first = api.register_consumer("vpce-c")
    assert api.register_consumer("vpce-c") == first
    assert api.unregister_consumer("vpce-missing") == first


def test_replace_policy_detects_stale_snapshot():
    api = ExposedApi("abc123", "vpce-p")
    before = api.policy
    assert api.replace_policy(frozenset(["vpce-x"]), ["vpce-x", "vpce-y"]) == False
    assert api.policy == before
    assert api.replace_policy(frozenset(), ["vpce-y"]) == True
    assert api.bound_endpoint_ids == frozenset(["vpce-p", "vpce-y"])


def test_concurrent_registrations_are_all_kept():
    api = ExposedApi("abc123", "vpce-p")
    consumers = [f"vpce-{n:02d}" for n in range(20)]
    threads = [threading.Thread(target=api.register_consumer, args=(c,)) for c in consumers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert api.external_endpoint_ids == frozenset(consumers)
    assert api.bound_endpoint_ids == frozenset(consumers + ["vpce-p"])
    assert api.policy == synthesize("vpce-p", consumers)


def test_api_requires_bound_endpoint():
    own = AccessEndpoint("provider-execute-api", "provider", "execute-api", PRIVATE_DNS_ENABLED)
    with pytest.raises(EndpointNotBound):
        ExposedApi("abc123", own)


def test_endpoint_configuration():
    api = ExposedApi("abc123", "vpce-p", ["vpce-b", "vpce-a"])
    assert api.endpoint_configuration() == {"types": ["PRIVATE"], "vpcEndpointIds": ["vpce-a", "vpce-b", "vpce-p"]}
    assert api.document() == to_document(synthesize("vpce-p", ["vpce-a", "vpce-b"]))


def test_urls():
    assert invoke_url("abc123", "us-east-2") == "https://abc123.execute-api.us-east-2.amazonaws.com/prod/"
    assert invoke_url("abc123", "us-east-2", "test") == "https://abc123.execute-api.us-east-2.amazonaws.com/test/"
    assert execute_arn("abc123", "us-east-2", "111111111111") == "arn:aws:execute-api:us-east-2:111111111111:abc123/*"
