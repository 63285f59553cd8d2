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


import argparse
import json
import os
import sys

from loguru import logger

from . import probe, reachability, topology
from .aws import status
from .core import FAILED, REQUESTED
from .endpoints import API_GATEWAY_SERVICE
from .errors import TopologyError


arg_parser = argparse.ArgumentParser(description="Resolves a private cross-region API topology into an ordered provisioning plan")
arg_parser.add_argument("--topology",
                        metavar="FILE",
                        dest='topology',
                        help="""A JSON or YAML file describing segments, endpoints, trust roles, peering
                                links, and the segment that exposes the API.
                                """)
arg_parser.add_argument("--plan",
                        dest='plan',
                        action='store_true',
                        help="""Print the ordered list of resource intents for the topology.
                                """)
arg_parser.add_argument("--format",
                        dest='format',
                        choices=['text', 'json'],
                        default='text',
                        help="""Output format for the plan. Defaults to text.
                                """)
arg_parser.add_argument("--check",
                        metavar="SEGMENT:ENDPOINT",
                        dest='check',
                        help="""Verify that the named segment can reach the named endpoint, using the routes
                                and ingress rules of the resolved topology.
                                """)
arg_parser.add_argument("--probe",
                        metavar="API_URL",
                        dest='probe',
                        help="""Call a deployed private API and report the response.
                                """)
arg_parser.add_argument("--endpointId",
                        metavar="VPC_ENDPOINT_ID",
                        dest='endpointId',
                        help="""The interface endpoint to use for --probe, when that endpoint doesn't have
                                private DNS enabled.
                                """)
arg_parser.add_argument("--peeringStatus",
                        metavar="PCX_ID",
                        dest='peeringStatus',
                        help="""Report the state of a deployed peering connection.
                                """)
arg_parser.add_argument("--wait",
                        dest='wait',
                        action='store_true',
                        help="""With --peeringStatus, keep polling until the connection is accepted or has
                                failed.
                                """)
arg_parser.add_argument("--endpointLookup",
                        metavar="VPC_ID",
                        dest='endpointLookup',
                        help="""Report the ID of the available interface endpoint in a deployed VPC.
                                """)
arg_parser.add_argument("--service",
                        dest='service',
                        default=API_GATEWAY_SERVICE,
                        help="""The endpoint service for --endpointLookup. Defaults to execute-api.
                                """)
arg_parser.add_argument("--policyDrift",
                        metavar="REST_API_ID",
                        dest='policyDrift',
                        help="""Compare the resource policy attached to a deployed API with the endpoints
                                that should be allowed (see --allow).
                                """)
arg_parser.add_argument("--allow",
                        metavar="VPC_ENDPOINT_ID",
                        dest='allow',
                        action='append',
                        default=[],
                        help="""An endpoint that the API policy should allow; may be repeated.
                                """)
arg_parser.add_argument("--region",
                        dest='region',
                        help="""The region of the resources inspected by --peeringStatus, --endpointLookup,
                                and --policyDrift. Defaults to the configured region.
                                """)
arg_parser.add_argument("--verbose",
                        dest='verbose',
                        action='store_true',
                        help="""Log resolver activity to stderr.
                                """)
args = arg_parser.parse_args()

logger.remove()
logger.add(sys.stderr, level="DEBUG" if args.verbose else os.getenv('CONNECTIVITY_PLAN_LOG_LEVEL', 'WARNING'))

if not (args.plan or args.check or args.probe or args.peeringStatus or args.endpointLookup or args.policyDrift):
    arg_parser.print_usage()
    sys.exit(2)

resolved = None
if args.topology:
    print("resolving topology")
    try:
        resolved = topology.resolve(topology.load(args.topology))
    except (OSError, TopologyError) as ex:
        print(f"* {ex}")
        sys.exit(2)
elif args.plan or args.check:
    print("* --plan and --check require --topology")
    sys.exit(2)

if args.plan:
    intents = resolved.plan()
    if args.format == 'json':
        print(json.dumps([intent._asdict() for intent in intents], indent=2, default=str))
    else:
        for intent in intents:
            deps = f" (after {', '.join(intent.depends_on)})" if intent.depends_on else ""
            print(f"* {intent.intent_id} [{intent.region}/{intent.account}]{deps}")
        for consumer, token in resolved.graph.cross_boundary_references():
            print(f"* {consumer} reads {token.step_id}.{token.name} across regions/accounts")

if args.check:
    segment_id, _, endpoint_name = args.check.partition(":")
    print("checking reachability")
    try:
        analysis = reachability.check(resolved, segment_id, endpoint_name)
    except TopologyError as ex:
        print(f"* {ex}")
        sys.exit(2)
    if analysis.success:
        print(f"* {analysis.success}")
    elif analysis.failure:
        print(f"* {analysis.failure}")
        sys.exit(3)
    elif analysis.context:
        for msg in analysis.context:
            print(f"* {msg}")
        sys.exit(3)

if args.probe:
    print("probing API")
    try:
        result = probe.probe(args.probe, args.endpointId)
    except OSError as ex:
        print(f"* {ex}")
        sys.exit(3)
    print(f"* status {result['status']} via {', '.join(result['addresses'])}")
    print(result['body'])
    if result['status'] >= 400:
        sys.exit(3)

if args.peeringStatus:
    print("retrieving peering status")
    if args.wait:
        state = status.wait_for_peering(args.peeringStatus, args.region)
    else:
        state = status.peering_state(args.peeringStatus, args.region)
    print(f"* {args.peeringStatus} is {state}")
    if state == FAILED or (args.wait and state == REQUESTED):
        sys.exit(3)

if args.endpointLookup:
    print("looking up endpoint")
    endpoint_id = status.lookup_endpoint_id(args.endpointLookup, args.service, args.region)
    if not endpoint_id:
        print(f"* {args.endpointLookup} has no available {args.service} endpoint")
        sys.exit(3)
    print(f"* {endpoint_id}")

if args.policyDrift:
    print("comparing API policy")
    missing, unexpected = status.policy_drift(args.policyDrift, args.region, args.allow)
    for endpoint_id in missing:
        print(f"* policy does not allow {endpoint_id}")
    for endpoint_id in unexpected:
        print(f"* policy allows unexpected {endpoint_id}")
    if missing or unexpected:
        sys.exit(3)
    print("* policy matches")
