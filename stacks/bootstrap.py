#!/usr/bin/env python3
SERVICE_TYPE_FILE = "/tmp/service_type.txt"
USER_DATA_LOG = "/var/log/user-data.log"

DOCKER_COMPOSE_URL = (
    "https://github.com/docker/compose/releases/latest/download/"
    "docker-compose-$(uname -s)-$(uname -m)"
)


def render_bootstrap_script(log_group_name: str, service: str, region: str) -> str:
    """
    Render the first-boot script shared by every compute pool.

    The instance records its service label in SERVICE_TYPE_FILE, installs
    docker and the CloudWatch agent, and points docker's awslogs driver at
    ``log_group_name`` with one stream per service label. Values may be
    CDK tokens; they resolve when the template is synthesized.
    """
    commands = [
        "set -e",
        "set -x",
        f"echo \"Writing service type '{service}' to {SERVICE_TYPE_FILE}\"",
        f'echo "{service}" > {SERVICE_TYPE_FILE}',
        f'echo "Contents of {SERVICE_TYPE_FILE}: $(cat {SERVICE_TYPE_FILE})"',
        "sudo yum update -y",
        "sudo yum install -y amazon-cloudwatch-agent",
        "sudo dnf install -y wget ruby docker",
        "sudo systemctl start docker",
        "sudo systemctl enable docker",
        "sudo usermod -a -G docker ec2-user",
        f"sudo curl -L {DOCKER_COMPOSE_URL} -o /usr/local/bin/docker-compose",
        "sudo chmod +x /usr/local/bin/docker-compose",
        "docker-compose --version",
        "sudo yum install -y jq",
        f"export SERVICE={service}",
        f"exec 1>>{USER_DATA_LOG} 2>&1",
        'echo "Finished User Data Execution at $(date)"',
        "sudo mkdir -p /etc/docker",
        "\n".join(
            [
                "sudo tee /etc/docker/daemon.json << EOF",
                "{",
                '  "log-driver": "awslogs",',
                '  "log-opts": {',
                f'    "awslogs-group": "{log_group_name}",',
                f'    "awslogs-region": "{region}",',
                f'    "awslogs-stream": "{service}"',
                "  }",
                "}",
                "EOF",
            ]
        ),
        "sudo systemctl restart docker",
        "sudo systemctl status docker",
    ]
    return "\n".join(commands)
