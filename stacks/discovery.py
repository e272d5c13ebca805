#!/usr/bin/env python3
"""
Out-of-band readers for values the preprod stack publishes.

Other systems find the database through three SSM parameters instead of
reading CloudFormation or RDS metadata. Generated EC2 key pairs keep their
private key in SSM under ``/ec2/keypair/<key-pair-id>``; operators fetch
it once and keep it locally.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.exceptions import ClientError

from stacks.errors import DiscoveryError
from stacks.topology import PARAMETER_PREFIX

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DatabaseEndpoint:
    secret_arn: str
    host: str
    port: int


def _client(service: str, client, region_name: Optional[str]):
    if client is not None:
        return client
    return boto3.client(service, region_name=region_name)


def resolve_database_endpoint(
    ssm_client=None, prefix: str = PARAMETER_PREFIX, region_name: Optional[str] = None
) -> DatabaseEndpoint:
    """Read the secret ARN, host and port published by the data tier."""
    ssm_client = _client("ssm", ssm_client, region_name)
    names = {
        "secret_arn": f"{prefix}/db-secret-arn",
        "host": f"{prefix}/db-host",
        "port": f"{prefix}/db-port",
    }

    try:
        response = ssm_client.get_parameters(Names=list(names.values()))
    except ClientError as e:
        raise DiscoveryError(f"Could not read database parameters under {prefix}: {e}") from e

    if response.get("InvalidParameters"):
        missing = ", ".join(sorted(response["InvalidParameters"]))
        raise DiscoveryError(f"Database parameters not published: {missing}")

    values = {parameter["Name"]: parameter["Value"] for parameter in response["Parameters"]}
    try:
        port = int(values[names["port"]])
    except ValueError as e:
        raise DiscoveryError(f"Database port {values[names['port']]!r} is not a number") from e

    endpoint = DatabaseEndpoint(
        secret_arn=values[names["secret_arn"]],
        host=values[names["host"]],
        port=port,
    )
    logger.info("Resolved database endpoint %s:%d", endpoint.host, endpoint.port)
    return endpoint


def fetch_database_credentials(
    endpoint: DatabaseEndpoint, secrets_client=None, region_name: Optional[str] = None
) -> dict:
    """Return the generated credentials JSON (username, password, host, ...)."""
    secrets_client = _client("secretsmanager", secrets_client, region_name)
    try:
        response = secrets_client.get_secret_value(SecretId=endpoint.secret_arn)
    except ClientError as e:
        raise DiscoveryError(f"Could not read database secret {endpoint.secret_arn}: {e}") from e

    try:
        return json.loads(response["SecretString"])
    except (KeyError, ValueError) as e:
        raise DiscoveryError(f"Database secret {endpoint.secret_arn} is not a JSON string") from e


def save_generated_private_key(
    key_pair_id: str,
    destination: str,
    ssm_client=None,
    region_name: Optional[str] = None,
) -> str:
    """
    Write a generated key pair's private key to ``destination`` (mode 0600).

    Refuses to overwrite an existing file so the key is retrieved once and
    never silently replaced.
    """
    if os.path.exists(destination):
        raise FileExistsError(f"{destination} already exists; refusing to overwrite")

    ssm_client = _client("ssm", ssm_client, region_name)
    parameter_name = f"/ec2/keypair/{key_pair_id}"
    try:
        response = ssm_client.get_parameter(Name=parameter_name, WithDecryption=True)
    except ClientError as e:
        raise DiscoveryError(f"Could not read private key {parameter_name}: {e}") from e

    fd = os.open(destination, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(response["Parameter"]["Value"])
    logger.info("Saved private key for %s to %s", key_pair_id, destination)
    return destination
