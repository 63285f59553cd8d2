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



import runpy
import sys

from pathlib import Path
from unittest.mock import patch

from connectivity_plan.core import ACCEPTED, FAILED, REQUESTED


TOPOLOGIES = Path(__file__).parent.parent / "topologies"


def run_cli(*argv):
    """ Runs the command-line entry point, returning its exit code.
        """
    with patch.object(sys, "argv", ["connectivity_plan"] + list(argv)):
        try:
            runpy.run_module("connectivity_plan", run_name="__main__")
        except SystemExit as ex:
            return ex.code
    return 0


def test_no_action():
    assert run_cli() == 2


def test_plan(capsys):
    assert run_cli("--topology", str(TOPOLOGIES / "same-region.json"), "--plan") == 0
    out = capsys.readouterr().out
    assert "* segment:provider [us-east-2/111111111111]" in out
    assert "* api_policy:provider-api" in out


def test_check(capsys):
    assert run_cli("--topology", str(TOPOLOGIES / "cross-region.yaml"), "--check", "consumer:connector-execute-api") == 0
    assert "* endpoint connector-execute-api has rule that allows 10.1.0.0/16 on port 443" in capsys.readouterr().out


def test_check_without_route(capsys):
    assert run_cli("--topology", str(TOPOLOGIES / "cross-region.yaml"), "--check", "connector:provider-execute-api") == 3
    assert "* subnet connector-isolated-1 has no route to 10.2.0.0/16" in capsys.readouterr().out


def test_peering_status(capsys):
    with patch("connectivity_plan.aws.status.peering_state", return_value=ACCEPTED) as mock_state:
        assert run_cli("--peeringStatus", "pcx-0123", "--region", "eu-west-1") == 0
    mock_state.assert_called_once_with("pcx-0123", "eu-west-1")
    assert "* pcx-0123 is accepted" in capsys.readouterr().out


def test_peering_status_wait_times_out():
    with patch("connectivity_plan.aws.status.wait_for_peering", return_value=REQUESTED) as mock_wait:
        assert run_cli("--peeringStatus", "pcx-0123", "--wait") == 3
    mock_wait.assert_called_once_with("pcx-0123", None)


def test_peering_status_failed():
    with patch("connectivity_plan.aws.status.peering_state", return_value=FAILED):
        assert run_cli("--peeringStatus", "pcx-0123") == 3


def test_endpoint_lookup(capsys):
    with patch("connectivity_plan.aws.status.lookup_endpoint_id", return_value="vpce-0123") as mock_lookup:
        assert run_cli("--endpointLookup", "vpc-0123", "--region", "us-east-2") == 0
    mock_lookup.assert_called_once_with("vpc-0123", "execute-api", "us-east-2")
    assert "* vpce-0123" in capsys.readouterr().out
    with patch("connectivity_plan.aws.status.lookup_endpoint_id", return_value=None):
        assert run_cli("--endpointLookup", "vpc-0123") == 3


def test_policy_drift(capsys):
    with patch("connectivity_plan.aws.status.policy_drift", return_value=(["vpce-c"], ["vpce-stale"])) as mock_drift:
        assert run_cli("--policyDrift", "abc123", "--allow", "vpce-a", "--allow", "vpce-c") == 3
    mock_drift.assert_called_once_with("abc123", None, ["vpce-a", "vpce-c"])
    out = capsys.readouterr().out
    assert "* policy does not allow vpce-c" in out
    assert "* policy allows unexpected vpce-stale" in out


def test_policy_matches(capsys):
    with patch("connectivity_plan.aws.status.policy_drift", return_value=([], [])):
        assert run_cli("--policyDrift", "abc123", "--allow", "vpce-a") == 0
    assert "* policy matches" in capsys.readouterr().out
