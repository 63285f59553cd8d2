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


""" Calls a private API through an interface endpoint, to verify that a deployed
    topology actually lets traffic through. Runs either locally or as a Lambda,
    in which case it's configured by the API_URL and VPC_ENDPOINT_ID environment
    variables.
    """

import json
import os
import socket

from urllib.parse import urlsplit, urlunsplit

import requests

from loguru import logger

from .endpoints import rewrite_hostname


DEFAULT_TIMEOUT = 10


def endpoint_url(api_url, endpoint_id=None):
    """ Rewrites an API's URL so that it's reached through the given endpoint.
        See https://docs.aws.amazon.com/apigateway/latest/developerguide/apigateway-private-api-test-invoke-url.html
        """
    parts = urlsplit(api_url)
    if not endpoint_id or not parts.hostname:
        return api_url
    netloc = rewrite_hostname(parts.hostname, endpoint_id)
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def lookup(hostname):
    """ Returns the distinct addresses that a hostname resolves to.
        """
    return sorted({info[4][0] for info in socket.getaddrinfo(hostname, None)})


def probe(api_url, endpoint_id=None, timeout=DEFAULT_TIMEOUT):
    url = endpoint_url(api_url, endpoint_id)
    hostname = urlsplit(url).hostname
    addresses = lookup(hostname)
    logger.info(f"{hostname} resolves to {', '.join(addresses)}")
    response = requests.get(url, timeout=timeout)
    return {
        "status": response.status_code,
        "body": response.text,
        "headers": dict(response.headers),
        "addresses": addresses,
    }


def handler(event, context):
    """ Lambda entry point.
        """
    logger.info(f"Event {json.dumps(event, default=str)}")
    return probe(os.environ["API_URL"], os.environ.get("VPC_ENDPOINT_ID"))
