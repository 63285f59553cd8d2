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


""" Reads back the state of provisioned resources: the identities of interface
    endpoints, the status of peering connections, and the resource policy that's
    actually attached to an API.
    """

import boto3
import json
import time

from botocore.config import Config
from botocore.exceptions import ClientError
from functools import lru_cache
from loguru import logger

from ..core import FAILED, REQUESTED
from ..endpoints import service_name
from ..peering import PEERING_STATUS_CODES
from ..policy import policy_endpoint_ids


def lookup_endpoint_id(vpc_id, service, region):
    """ Returns the ID of the available interface endpoint for a service in a VPC,
        or None if there isn't one.
        """
    resp = _ec2_client(region).describe_vpc_endpoints(Filters=[
        {'Name': "vpc-id", 'Values': [vpc_id]},
        {'Name': "service-name", 'Values': [service_name(region, service)]},
    ])
    for endpoint in resp['VpcEndpoints']:
        if endpoint.get('State', '').lower() == "available":
            return endpoint['VpcEndpointId']
    return None


def peering_state(peering_connection_id, region):
    """ Returns the link state corresponding to a peering connection's status.
        A connection that can't be found is reported as failed.
        """
    try:
        resp = _ec2_client(region).describe_vpc_peering_connections(VpcPeeringConnectionIds=[peering_connection_id])
    except ClientError as ex:
        if ex.response.get('Error', {}).get('Code') == "InvalidVpcPeeringConnectionID.NotFound":
            return FAILED
        raise
    connections = resp['VpcPeeringConnections']
    if not connections:
        return FAILED
    code = connections[0]['Status']['Code']
    return PEERING_STATUS_CODES.get(code, REQUESTED)


def wait_for_peering(peering_connection_id, region, timeout=300, interval=10):
    """ Polls until a peering connection leaves the requested state, or the timeout
        expires. Returns the last state seen.
        """
    deadline = time.monotonic() + timeout
    while True:
        state = peering_state(peering_connection_id, region)
        if state != REQUESTED or time.monotonic() >= deadline:
            return state
        logger.debug(f"{peering_connection_id} still {state}; waiting {interval}s")
        time.sleep(interval)


def live_policy_endpoint_ids(rest_api_id, region):
    """ Returns the endpoint IDs matched by each statement of the API's current
        resource policy; an empty list if it has no policy.
        """
    policy = _apigateway_client(region).get_rest_api(restApiId=rest_api_id).get('policy')
    if not policy:
        return []
    # API Gateway returns the policy document with its quotes escaped
    return policy_endpoint_ids(json.loads(policy.replace('\\"', '"')))


def policy_drift(rest_api_id, region, expected_endpoint_ids):
    """ Compares the live policy to the expected endpoint set. Returns the IDs that
        are missing and the IDs that shouldn't be there, across all statements.
        """
    expected = frozenset(expected_endpoint_ids)
    missing = set()
    unexpected = set()
    statements = live_policy_endpoint_ids(rest_api_id, region)
    if not statements:
        return sorted(expected), []
    for matched in statements:
        missing |= expected - matched
        unexpected |= matched - expected
    return sorted(missing), sorted(unexpected)


##
## Internals
##

_CLIENT_CONFIG = Config(retries={'max_attempts': 5, 'mode': 'standard'})


@lru_cache(maxsize=None)
def _ec2_client(region):
    return boto3.client('ec2', region_name=region, config=_CLIENT_CONFIG)


@lru_cache(maxsize=None)
def _apigateway_client(region):
    return boto3.client('apigateway', region_name=region, config=_CLIENT_CONFIG)
