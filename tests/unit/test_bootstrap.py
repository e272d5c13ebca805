"""
Unit tests for the instance bootstrap script
"""

import json

import pytest

from stacks.bootstrap import SERVICE_TYPE_FILE, render_bootstrap_script


def _daemon_config(script):
    start = script.index("<< EOF\n") + len("<< EOF\n")
    end = script.index("\nEOF", start)
    return json.loads(script[start:end])


class TestBootstrapScript:
    """Test class for render_bootstrap_script"""

    @pytest.mark.parametrize("service", ["server", "math"])
    def test_service_marker(self, service):
        """Test that the service label is written to the marker file"""
        script = render_bootstrap_script("preprod-logs", service, "us-east-1")
        assert f'echo "{service}" > {SERVICE_TYPE_FILE}' in script
        assert f"export SERVICE={service}" in script

    @pytest.mark.parametrize("service", ["server", "math"])
    def test_docker_log_driver(self, service):
        """Test that docker ships logs to the log group, one stream per service"""
        script = render_bootstrap_script("preprod-logs", service, "eu-west-1")
        assert _daemon_config(script) == {
            "log-driver": "awslogs",
            "log-opts": {
                "awslogs-group": "preprod-logs",
                "awslogs-region": "eu-west-1",
                "awslogs-stream": service,
            },
        }

    def test_installs_runtime_and_agent(self):
        """Test that docker and the CloudWatch agent are installed and started"""
        script = render_bootstrap_script("preprod-logs", "server", "us-east-1")
        assert "amazon-cloudwatch-agent" in script
        assert "sudo dnf install -y wget ruby docker" in script
        assert "sudo systemctl enable docker" in script
        assert script.index("daemon.json") < script.index("sudo systemctl restart docker")

    def test_fails_fast(self):
        """Test that the script stops on the first failing command"""
        script = render_bootstrap_script("preprod-logs", "server", "us-east-1")
        assert script.splitlines()[0] == "set -e"

    def test_pure(self):
        """Test that rendering is deterministic"""
        assert render_bootstrap_script("g", "math", "r") == render_bootstrap_script("g", "math", "r")
