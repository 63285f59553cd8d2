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


""" Code to retrieve information about an existing VPC and describe it as a
    segment, so that it can take part in a topology.
    """

import boto3
import ipaddress

from botocore.config import Config
from functools import lru_cache

from ..core import Segment, Subnet, ISOLATED, PRIVATE, PUBLIC


def lookup(vpc_id, region=None):
    """ Retrieves the provided VPC and its subnets. The segment ID is the VPC ID,
        and subnet kinds are derived from each subnet's default route.
        """
    client = _ec2_client(region)
    vpc = client.describe_vpcs(VpcIds=[vpc_id])['Vpcs'][0]
    route_tables_by_subnet, main_route_table = _describe_route_tables_by_subnet(client, vpc_id)
    subnets = _describe_subnets(client, vpc_id, route_tables_by_subnet, main_route_table)
    return Segment(vpc_id, vpc['CidrBlock'], client.meta.region_name, vpc['OwnerId'], subnets)


def subnet_kind(gateway):
    """ A default route through an internet gateway makes a subnet public; through
        a NAT gateway, private. No default route at all means isolated.
        """
    if not gateway:
        return ISOLATED
    if gateway.startswith("igw-"):
        return PUBLIC
    return PRIVATE


##
## Internals
##

@lru_cache(maxsize=None)
def _ec2_client(region):
    return boto3.client('ec2', region_name=region, config=Config(retries={'max_attempts': 5, 'mode': 'standard'}))


def vpc_filter(vpc_id):
    return [{'Name': "vpc-id", 'Values': [vpc_id]}]


def _describe_subnets(client, vpc_id, route_table_lookup, main_route_table):
    result = []
    subnets = client.describe_subnets(Filters=vpc_filter(vpc_id))['Subnets']
    subnets = sorted(subnets, key=lambda s: ipaddress.IPv4Network(s['CidrBlock']))
    for subnet in subnets:
        subnet_id = subnet['SubnetId']
        route_table_id, gateway = route_table_lookup.get(subnet_id, main_route_table)
        result.append(Subnet(vpc_id, subnet_id, subnet_kind(gateway), route_table_id, subnet['CidrBlock']))
    return result


def _describe_route_tables_by_subnet(client, vpc_id):
    """ Returns (route table ID, default gateway) for each explicitly associated
        subnet, along with the same information for the VPC's main route table,
        which applies to all other subnets.
        """
    result = {}
    main_route_table = (None, None)
    route_tables = client.describe_route_tables(Filters=vpc_filter(vpc_id))['RouteTables']
    for rt in route_tables:
        gateway = None
        for route in rt.get('Routes', []):
            if route.get('DestinationCidrBlock') == "0.0.0.0/0":
                gateway = route.get('GatewayId', route.get('NatGatewayId'))
        for assoc in rt.get('Associations', []):
            state = assoc.get('AssociationState', {}).get('State')
            if state != "associated":
                continue
            if assoc.get('Main'):
                main_route_table = (rt['RouteTableId'], gateway)
            elif assoc.get('SubnetId'):
                result[assoc['SubnetId']] = (rt['RouteTableId'], gateway)
    return result, main_route_table
