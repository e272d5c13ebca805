#!/usr/bin/env python3
"""
Topology builder for the preprod Polis environment.

``build_topology`` turns a StackConfig into a frozen TopologyPlan: one
description per resource plus the ResourceGraph that orders them. Every
sub-builder is a pure function of its inputs, so the same configuration
always produces an equal plan. Nothing here touches AWS or CDK; the
PreprodPolisStack renders the plan.
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Tuple

from stacks.config import StackConfig
from stacks.errors import ConfigurationError, PolicyLimitError
from stacks.graph import EdgeKind, GraphBuilder, NodeKind, ResourceGraph

logger = logging.getLogger(__name__)

# IAM quotas for a single role
MAX_MANAGED_POLICIES_PER_ROLE = 10
MAX_INLINE_POLICY_CHARS = 10240

ANY_IPV4 = "0.0.0.0/0"
SSH_PORT = 22
HTTP_PORT = 80
HTTPS_PORT = 443
POSTGRES_PORT = 5432

DOMAIN_NAME = "preprod.pol.is"
NOTIFICATION_EMAIL = "tim@compdemocracy.org"
PARAMETER_PREFIX = "/preprod/polis"
HEALTH_CHECK_PATH = "/api/v3/testConnection"

VPC_ID = "PreprodVpc"
WEB_SECURITY_GROUP_ID = "PreprodWebSecurityGroup"
MATH_WORKER_SECURITY_GROUP_ID = "PreprodMathWorkerSG"
LB_SECURITY_GROUP_ID = "PreprodLBSecurityGroup"
INSTANCE_ROLE_ID = "PreprodInstanceRole"
CODE_DEPLOY_ROLE_ID = "PreprodCodeDeployRole"
LOG_GROUP_ID = "PreprodLogGroup"
ALARM_TOPIC_ID = "PreprodAlarmTopic"
ENV_SECRET_ID = "PreprodWebAppEnvVarsSecret"
DB_SUBNET_GROUP_ID = "PreprodDatabaseSubnetGroup"
DATABASE_ID = "PreprodDatabase"
LOAD_BALANCER_ID = "PreprodLb"
TARGET_GROUP_ID = "PreprodWebAppTargetGroup"
CERTIFICATE_ID = "PreprodWebAppCertificate"
HTTP_LISTENER_ID = "PreprodHttpListener"
HTTPS_LISTENER_ID = "PreprodHttpsListener"
UNHEALTHY_HOSTS_ALARM_ID = "PreprodWebUnhealthyHostsAlarm"
APPLICATION_ID = "PreprodCodeDeployApplication"
DEPLOYMENT_GROUP_ID = "PreprodDeploymentGroup"
DEPLOYMENT_BUCKET_ID = "PreprodDeploymentPackageBucket"


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------


class SubnetKind(str, Enum):
    PUBLIC = "public"
    ISOLATED = "isolated"


@dataclass(frozen=True)
class SubnetGroupSpec:
    name: str
    kind: SubnetKind
    cidr_mask: int


@dataclass(frozen=True)
class NetworkTopology:
    vpc_id: str
    max_azs: int
    nat_gateways: int
    subnet_groups: Tuple[SubnetGroupSpec, ...]

    def group(self, kind: SubnetKind) -> SubnetGroupSpec:
        return next(group for group in self.subnet_groups if group.kind == kind)


def partition_network(
    max_azs: int = 2, public_cidr_mask: int = 24, isolated_cidr_mask: int = 24
) -> NetworkTopology:
    """One public and one isolated subnet group per AZ, no NAT gateways."""
    if max_azs < 1:
        raise ConfigurationError(f"max_azs must be at least 1, got {max_azs}")
    for key, mask in (
        ("public_cidr_mask", public_cidr_mask),
        ("isolated_cidr_mask", isolated_cidr_mask),
    ):
        if not 16 <= mask <= 28:
            raise ConfigurationError(f"{key} must be between 16 and 28, got {mask}")

    return NetworkTopology(
        vpc_id=VPC_ID,
        max_azs=max_azs,
        nat_gateways=0,
        subnet_groups=(
            SubnetGroupSpec("PreprodPublic", SubnetKind.PUBLIC, public_cidr_mask),
            SubnetGroupSpec("PreprodPrivate", SubnetKind.ISOLATED, isolated_cidr_mask),
        ),
    )


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PolicyStatementSpec:
    actions: Tuple[str, ...]
    resources: Tuple[str, ...]

    def to_json(self) -> dict:
        return {
            "Effect": "Allow",
            "Action": list(self.actions),
            "Resource": list(self.resources),
        }


@dataclass(frozen=True)
class RoleSpec:
    construct_id: str
    assumed_by: str
    managed_policies: Tuple[str, ...]
    inline_statements: Tuple[PolicyStatementSpec, ...] = ()

    def inline_policy_size(self) -> int:
        document = {
            "Version": "2012-10-17",
            "Statement": [statement.to_json() for statement in self.inline_statements],
        }
        return len(json.dumps(document, separators=(",", ":")))


@dataclass(frozen=True)
class IdentityPlan:
    instance_role: RoleSpec
    deploy_role: RoleSpec


def check_policy_limits(role: RoleSpec) -> RoleSpec:
    if len(role.managed_policies) > MAX_MANAGED_POLICIES_PER_ROLE:
        raise PolicyLimitError(
            f"{role.construct_id} attaches {len(role.managed_policies)} managed policies, "
            f"limit is {MAX_MANAGED_POLICIES_PER_ROLE}"
        )
    size = role.inline_policy_size()
    if size > MAX_INLINE_POLICY_CHARS:
        raise PolicyLimitError(
            f"{role.construct_id} inline policy is {size} characters, "
            f"limit is {MAX_INLINE_POLICY_CHARS}"
        )
    return role


def compose_identity() -> IdentityPlan:
    instance_role = RoleSpec(
        construct_id=INSTANCE_ROLE_ID,
        assumed_by="ec2.amazonaws.com",
        managed_policies=(
            "AmazonSSMManagedInstanceCore",
            "service-role/AmazonEC2RoleforAWSCodeDeploy",
            "SecretsManagerReadWrite",
            "AmazonEC2ContainerRegistryReadOnly",
            "CloudWatchLogsFullAccess",
        ),
        inline_statements=(
            PolicyStatementSpec(
                actions=("s3:PutObject", "s3:PutObjectAcl", "s3:AbortMultipartUpload"),
                resources=("arn:aws:s3:::*", "arn:aws:s3:::*/*"),
            ),
        ),
    )
    deploy_role = RoleSpec(
        construct_id=CODE_DEPLOY_ROLE_ID,
        assumed_by="codedeploy.amazonaws.com",
        managed_policies=("service-role/AWSCodeDeployRole",),
    )
    return IdentityPlan(
        instance_role=check_policy_limits(instance_role),
        deploy_role=check_policy_limits(deploy_role),
    )


# ---------------------------------------------------------------------------
# Security groups
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IngressRule:
    """A tcp ingress rule from either a CIDR block or a peer security group."""

    port: int
    description: str
    cidr: Optional[str] = None
    peer: Optional[str] = None
    protocol: str = "tcp"

    @property
    def source(self) -> str:
        return self.cidr or self.peer


@dataclass(frozen=True)
class SecurityGroupSpec:
    construct_id: str
    owner: str
    description: str
    ingress: Tuple[IngressRule, ...]
    allow_all_outbound: bool = True

    def rules_on_port(self, port: int) -> Tuple[IngressRule, ...]:
        return tuple(rule for rule in self.ingress if rule.port == port)


@dataclass(frozen=True)
class SecurityGroups:
    web: SecurityGroupSpec
    math_worker: SecurityGroupSpec
    load_balancer: SecurityGroupSpec

    def __iter__(self) -> Iterator[SecurityGroupSpec]:
        return iter((self.web, self.math_worker, self.load_balancer))


def ssh_rules(config: StackConfig) -> Tuple[IngressRule, ...]:
    """SSH ingress fragment; empty unless SSH access is enabled."""
    if not config.enable_ssh_access:
        return ()
    return (IngressRule(SSH_PORT, "Allow SSH access", cidr=config.ssh_source),)


def web_rules() -> Tuple[IngressRule, ...]:
    return (
        IngressRule(HTTP_PORT, "Allow HTTP from anywhere", cidr=ANY_IPV4),
        IngressRule(HTTPS_PORT, "Allow HTTPS from anywhere", cidr=ANY_IPV4),
    )


def derive_security_groups(config: StackConfig) -> SecurityGroups:
    # The web pool keeps its own HTTP/HTTPS rules: the singleton instance
    # is reached directly as well as through the load balancer.
    return SecurityGroups(
        web=SecurityGroupSpec(
            construct_id=WEB_SECURITY_GROUP_ID,
            owner="web",
            description="Allow HTTP and SSH access to preprod web instances",
            ingress=ssh_rules(config) + web_rules(),
        ),
        math_worker=SecurityGroupSpec(
            construct_id=MATH_WORKER_SECURITY_GROUP_ID,
            owner="math-worker",
            description="Security group for preprod Polis math worker",
            ingress=ssh_rules(config),
        ),
        load_balancer=SecurityGroupSpec(
            construct_id=LB_SECURITY_GROUP_ID,
            owner="load-balancer",
            description="Security group for the load balancer",
            ingress=web_rules(),
        ),
    )


# ---------------------------------------------------------------------------
# Shared services
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SharedServicesSpec:
    log_group_id: str
    alarm_topic_id: str
    alarm_topic_display_name: str
    notification_email: str
    env_secret_id: str
    env_secret_name: str
    env_secret_description: str


def build_shared_services() -> SharedServicesSpec:
    return SharedServicesSpec(
        log_group_id=LOG_GROUP_ID,
        alarm_topic_id=ALARM_TOPIC_ID,
        alarm_topic_display_name="Preprod Polis Application Alarms",
        notification_email=NOTIFICATION_EMAIL,
        env_secret_id=ENV_SECRET_ID,
        env_secret_name="preprod-polis-web-app-env-vars",
        env_secret_description="Environment variables for the Preprod Polis web application",
    )


# ---------------------------------------------------------------------------
# Compute pools
# ---------------------------------------------------------------------------


class CpuArchitecture(str, Enum):
    X86_64 = "x86_64"
    ARM_64 = "arm64"


@dataclass(frozen=True)
class MachineImageSpec:
    os: str
    cpu: CpuArchitecture


@dataclass(frozen=True)
class KeyPairSpec:
    construct_id: str
    imported_name: Optional[str] = None

    @property
    def generated(self) -> bool:
        return self.imported_name is None


class HealthCheckKind(str, Enum):
    ELB = "elb"
    EC2 = "ec2"


@dataclass(frozen=True)
class HealthCheckPolicy:
    kind: HealthCheckKind
    grace_minutes: int = 15

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "kind", HealthCheckKind(self.kind))
        except ValueError:
            raise ConfigurationError(
                f"Unknown health check kind {self.kind!r}, expected one of "
                f"{', '.join(kind.value for kind in HealthCheckKind)}"
            ) from None


@dataclass(frozen=True)
class ComputePoolSpec:
    name: str
    service_label: str
    instance_shape: str
    image: MachineImageSpec
    security_group_id: str
    role_id: str
    log_destination_id: str
    launch_template_id: str
    instance_id: str
    asg_id: str
    health_check: HealthCheckPolicy
    key_pair: Optional[KeyPairSpec] = None
    min_capacity: int = 1
    max_capacity: int = 2
    subnet_kind: SubnetKind = SubnetKind.PUBLIC

    @property
    def compute_ids(self) -> Tuple[str, str]:
        return (self.instance_id, self.asg_id)


@dataclass(frozen=True)
class ComputePools:
    web: ComputePoolSpec
    math_worker: ComputePoolSpec

    def __iter__(self) -> Iterator[ComputePoolSpec]:
        return iter((self.web, self.math_worker))


_SHAPE_PATTERN = re.compile(r"^(?P<family>[a-z]+)(?P<generation>\d+)(?P<attributes>[a-z-]*)\.(?P<size>[a-z0-9]+)$")


def shape_architecture(shape: str) -> CpuArchitecture:
    """Graviton shapes carry a ``g`` attribute after the generation (r8g, t4g)."""
    match = _SHAPE_PATTERN.match(shape)
    if not match:
        raise ConfigurationError(f"Unrecognised instance shape {shape!r}")
    if "g" in match.group("attributes"):
        return CpuArchitecture.ARM_64
    return CpuArchitecture.X86_64


def key_pair_for(config: StackConfig, construct_id: str, name: Optional[str]) -> Optional[KeyPairSpec]:
    if not config.enable_ssh_access:
        return None
    return KeyPairSpec(construct_id=construct_id, imported_name=name)


def _pool(
    name: str,
    prefix: str,
    service_label: str,
    instance_shape: str,
    image: MachineImageSpec,
    security_group: SecurityGroupSpec,
    identity: IdentityPlan,
    services: SharedServicesSpec,
    health_check: HealthCheckPolicy,
    key_pair: Optional[KeyPairSpec],
    asg_id: str,
    subnet_kind: SubnetKind,
) -> ComputePoolSpec:
    if shape_architecture(instance_shape) != image.cpu:
        raise ConfigurationError(
            f"{name} pool: shape {instance_shape} cannot boot a {image.cpu.value} image"
        )
    return ComputePoolSpec(
        name=name,
        service_label=service_label,
        instance_shape=instance_shape,
        image=image,
        security_group_id=security_group.construct_id,
        role_id=identity.instance_role.construct_id,
        log_destination_id=services.log_group_id,
        launch_template_id=f"{prefix}LaunchTemplate",
        instance_id=f"{prefix}Instance",
        asg_id=asg_id,
        health_check=health_check,
        key_pair=key_pair,
        subnet_kind=subnet_kind,
    )


def build_compute_pools(
    config: StackConfig,
    network: NetworkTopology,
    identity: IdentityPlan,
    groups: SecurityGroups,
    services: SharedServicesSpec,
) -> ComputePools:
    public = network.group(SubnetKind.PUBLIC)
    web = _pool(
        name="web",
        prefix="PreprodWeb",
        service_label="server",
        instance_shape="t3.medium",
        image=MachineImageSpec("amazon-linux-2023", CpuArchitecture.X86_64),
        security_group=groups.web,
        identity=identity,
        services=services,
        # waits for target group registration before health counts
        health_check=HealthCheckPolicy(HealthCheckKind.ELB, grace_minutes=15),
        key_pair=key_pair_for(config, "PreprodWebKeyPair", config.web_key_pair_name),
        asg_id="PreprodAsg",
        subnet_kind=public.kind,
    )
    math_worker = _pool(
        name="math-worker",
        prefix="PreprodMathWorker",
        service_label="math",
        instance_shape="r8g.xlarge",
        image=MachineImageSpec("amazon-linux-2023", CpuArchitecture.ARM_64),
        security_group=groups.math_worker,
        identity=identity,
        services=services,
        health_check=HealthCheckPolicy(HealthCheckKind.EC2, grace_minutes=15),
        key_pair=key_pair_for(
            config, "PreprodMathWorkerKeyPair", config.math_worker_key_pair_name
        ),
        asg_id="AsgMathWorker",
        subnet_kind=public.kind,
    )
    return ComputePools(web=web, math_worker=math_worker)


# ---------------------------------------------------------------------------
# Data tier
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParameterSpec:
    construct_id: str
    name: str
    attribute: str
    description: str


@dataclass(frozen=True)
class DatabaseSpec:
    construct_id: str
    engine: str
    engine_version: str
    instance_shape: str
    allocated_storage_gib: int
    storage_type: str
    username: str
    database_name: str
    port: int
    subnet_group_id: str
    subnet_group_name: str
    subnet_kind: SubnetKind
    ingress: Tuple[IngressRule, ...]
    parameters: Tuple[ParameterSpec, ...]
    removal_policy: str = "snapshot"
    deletion_protection: bool = True
    publicly_accessible: bool = False


def provision_data_tier(network: NetworkTopology, pools: ComputePools) -> DatabaseSpec:
    isolated = network.group(SubnetKind.ISOLATED)
    ingress = tuple(
        IngressRule(
            POSTGRES_PORT,
            f"Allow database access from {pool.name} instances",
            peer=pool.security_group_id,
        )
        for pool in pools
    )
    parameters = (
        ParameterSpec(
            "PreprodDBSecretArnParameter",
            f"{PARAMETER_PREFIX}/db-secret-arn",
            "secret_arn",
            "SSM Parameter storing the ARN of the Preprod Polis Database Secret",
        ),
        ParameterSpec(
            "PreprodDBHostParameter",
            f"{PARAMETER_PREFIX}/db-host",
            "host",
            "SSM Parameter storing the Preprod Polis Database Host",
        ),
        ParameterSpec(
            "PreprodDBPortParameter",
            f"{PARAMETER_PREFIX}/db-port",
            "port",
            "SSM Parameter storing the Preprod Polis Database Port",
        ),
    )
    return DatabaseSpec(
        construct_id=DATABASE_ID,
        engine="postgres",
        engine_version="17",
        instance_shape="t3.large",
        allocated_storage_gib=20,
        storage_type="gp2",
        username="dbUser",
        database_name="polisdb",
        port=POSTGRES_PORT,
        subnet_group_id=DB_SUBNET_GROUP_ID,
        subnet_group_name="PreprodPolisDatabaseSubnetGroup",
        subnet_kind=isolated.kind,
        ingress=ingress,
        parameters=parameters,
    )


# ---------------------------------------------------------------------------
# Edge and routing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TargetGroupSpec:
    construct_id: str
    port: int
    protocol: str
    target_asg_id: str
    health_check_path: str
    interval_seconds: int
    timeout_seconds: int
    healthy_threshold: int
    unhealthy_threshold: int


@dataclass(frozen=True)
class CertificateSpec:
    construct_id: str
    domain_name: str
    validation: str = "dns"


@dataclass(frozen=True)
class ListenerSpec:
    construct_id: str
    port: int
    protocol: str
    certificate_id: Optional[str] = None


@dataclass(frozen=True)
class LoadBalancerSpec:
    construct_id: str
    security_group_id: str
    internet_facing: bool
    idle_timeout_seconds: int
    target_group: TargetGroupSpec
    certificate: CertificateSpec
    listeners: Tuple[ListenerSpec, ...]


def compose_edge(groups: SecurityGroups, pools: ComputePools) -> LoadBalancerSpec:
    target_group = TargetGroupSpec(
        construct_id=TARGET_GROUP_ID,
        port=HTTP_PORT,
        protocol="HTTP",
        target_asg_id=pools.web.asg_id,
        health_check_path=HEALTH_CHECK_PATH,
        interval_seconds=300,
        timeout_seconds=10,
        # slow to mark unhealthy, quick to recover
        healthy_threshold=2,
        unhealthy_threshold=10,
    )
    certificate = CertificateSpec(CERTIFICATE_ID, DOMAIN_NAME)
    return LoadBalancerSpec(
        construct_id=LOAD_BALANCER_ID,
        security_group_id=groups.load_balancer.construct_id,
        internet_facing=True,
        idle_timeout_seconds=300,
        target_group=target_group,
        certificate=certificate,
        listeners=(
            ListenerSpec(HTTP_LISTENER_ID, HTTP_PORT, "HTTP"),
            ListenerSpec(HTTPS_LISTENER_ID, HTTPS_PORT, "HTTPS", certificate.construct_id),
        ),
    )


# ---------------------------------------------------------------------------
# Deployment alarm
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AlarmSpec:
    construct_id: str
    alarm_name: str
    namespace: str
    metric_name: str
    statistic: str
    period_minutes: int
    threshold: int
    evaluation_periods: int
    target_group_id: str
    load_balancer_id: str
    topic_id: str


def build_deployment_alarm(edge: LoadBalancerSpec, services: SharedServicesSpec) -> AlarmSpec:
    return AlarmSpec(
        construct_id=UNHEALTHY_HOSTS_ALARM_ID,
        alarm_name="PreprodPolis-Web-UnhealthyHosts",
        namespace="AWS/ApplicationELB",
        metric_name="UnHealthyHostCount",
        statistic="Maximum",
        period_minutes=5,
        threshold=1,
        evaluation_periods=2,
        target_group_id=edge.target_group.construct_id,
        load_balancer_id=edge.construct_id,
        topic_id=services.alarm_topic_id,
    )


# ---------------------------------------------------------------------------
# Release pipeline
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RollbackTriggers:
    failed_deployment: bool = True
    stopped_deployment: bool = True
    deployment_in_alarm: bool = True


@dataclass(frozen=True)
class DeploymentBucketSpec:
    construct_id: str
    name_prefix: str
    read_grantee_id: str
    versioned: bool = True
    auto_delete_objects: bool = True


@dataclass(frozen=True)
class ReleasePipelineSpec:
    application_id: str
    application_name: str
    deployment_group_id: str
    deployment_group_name: str
    asg_ids: Tuple[str, ...]
    deployment_config: str
    role_id: str
    alarm_ids: Tuple[str, ...]
    bucket: DeploymentBucketSpec
    # must exist before any compute node boots
    ordering_sources: Tuple[str, ...]
    rollback: RollbackTriggers = RollbackTriggers()
    install_agent: bool = True


def wire_release_pipeline(
    identity: IdentityPlan,
    pools: ComputePools,
    services: SharedServicesSpec,
    database: DatabaseSpec,
    alarm: AlarmSpec,
) -> ReleasePipelineSpec:
    return ReleasePipelineSpec(
        application_id=APPLICATION_ID,
        application_name="PreprodPolisApplication",
        deployment_group_id=DEPLOYMENT_GROUP_ID,
        deployment_group_name="PreprodPolisDeploymentGroup",
        asg_ids=tuple(pool.asg_id for pool in pools),
        deployment_config="one-at-a-time",
        role_id=identity.deploy_role.construct_id,
        alarm_ids=(alarm.construct_id,),
        bucket=DeploymentBucketSpec(
            construct_id=DEPLOYMENT_BUCKET_ID,
            name_prefix="preprod-polis-deployment-packages",
            read_grantee_id=identity.instance_role.construct_id,
        ),
        ordering_sources=(
            services.log_group_id,
            services.env_secret_id,
            database.construct_id,
        ),
    )


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TopologyPlan:
    config: StackConfig
    network: NetworkTopology
    identity: IdentityPlan
    security_groups: SecurityGroups
    services: SharedServicesSpec
    pools: ComputePools
    database: DatabaseSpec
    edge: LoadBalancerSpec
    alarm: AlarmSpec
    release: ReleasePipelineSpec
    graph: ResourceGraph

    def compute_ids(self) -> Tuple[str, ...]:
        return tuple(name for pool in self.pools for name in pool.compute_ids)


def assemble_graph(
    network: NetworkTopology,
    identity: IdentityPlan,
    groups: SecurityGroups,
    services: SharedServicesSpec,
    pools: ComputePools,
    database: DatabaseSpec,
    edge: LoadBalancerSpec,
    alarm: AlarmSpec,
    release: ReleasePipelineSpec,
) -> ResourceGraph:
    graph = GraphBuilder()
    vpc = graph.add_node(network.vpc_id, NodeKind.NETWORK)

    for group in groups:
        graph.add_node(group.construct_id, NodeKind.SECURITY)
        graph.add_edge(vpc, group.construct_id)

    for role in (identity.instance_role, identity.deploy_role):
        graph.add_node(role.construct_id, NodeKind.IDENTITY)

    graph.add_node(services.log_group_id, NodeKind.SHARED)
    graph.add_node(services.alarm_topic_id, NodeKind.SHARED)
    graph.add_node(services.env_secret_id, NodeKind.SHARED)

    for pool in pools:
        launch_inputs = [pool.security_group_id, pool.role_id, pool.log_destination_id]
        if pool.key_pair is not None:
            graph.add_node(pool.key_pair.construct_id, NodeKind.KEY_PAIR)
            launch_inputs.append(pool.key_pair.construct_id)

        graph.add_node(pool.launch_template_id, NodeKind.LAUNCH_TEMPLATE)
        graph.depends_on(pool.launch_template_id, launch_inputs)

        for compute_id in pool.compute_ids:
            graph.add_node(compute_id, NodeKind.COMPUTE)
            graph.depends_on(compute_id, [vpc, pool.launch_template_id])
        graph.depends_on(pool.instance_id, launch_inputs)

    graph.add_node(database.subnet_group_id, NodeKind.DATABASE)
    graph.add_edge(vpc, database.subnet_group_id)
    graph.add_node(database.construct_id, NodeKind.DATABASE)
    graph.depends_on(
        database.construct_id,
        [vpc, database.subnet_group_id] + [rule.peer for rule in database.ingress],
    )
    for parameter in database.parameters:
        graph.add_node(parameter.construct_id, NodeKind.PARAMETER)
        graph.add_edge(database.construct_id, parameter.construct_id)

    graph.add_node(edge.construct_id, NodeKind.EDGE)
    graph.depends_on(edge.construct_id, [vpc, edge.security_group_id])
    target_group = edge.target_group
    graph.add_node(target_group.construct_id, NodeKind.EDGE)
    graph.depends_on(target_group.construct_id, [vpc, target_group.target_asg_id])
    graph.add_node(edge.certificate.construct_id, NodeKind.EDGE)
    for listener in edge.listeners:
        graph.add_node(listener.construct_id, NodeKind.EDGE)
        graph.depends_on(listener.construct_id, [edge.construct_id, target_group.construct_id])
        if listener.certificate_id:
            graph.add_edge(listener.certificate_id, listener.construct_id)

    graph.add_node(alarm.construct_id, NodeKind.ALARM)
    graph.depends_on(
        alarm.construct_id, [alarm.target_group_id, alarm.load_balancer_id, alarm.topic_id]
    )

    graph.add_node(release.bucket.construct_id, NodeKind.RELEASE)
    graph.add_edge(release.bucket.construct_id, release.bucket.read_grantee_id)
    graph.add_node(release.application_id, NodeKind.RELEASE)
    graph.add_node(release.deployment_group_id, NodeKind.RELEASE)
    graph.depends_on(
        release.deployment_group_id,
        [release.application_id, release.role_id, *release.asg_ids, *release.alarm_ids],
    )

    for pool in pools:
        for compute_id in pool.compute_ids:
            graph.depends_on(compute_id, release.ordering_sources, EdgeKind.ORDERING)

    return graph.build()


def build_topology(config: StackConfig) -> TopologyPlan:
    """Run every sub-builder once, in dependency order, and freeze the result."""
    network = partition_network()
    identity = compose_identity()
    groups = derive_security_groups(config)
    services = build_shared_services()
    pools = build_compute_pools(config, network, identity, groups, services)
    database = provision_data_tier(network, pools)
    edge = compose_edge(groups, pools)
    alarm = build_deployment_alarm(edge, services)
    release = wire_release_pipeline(identity, pools, services, database, alarm)

    if config.enable_ssh_access:
        logger.info("SSH access enabled from %s", config.ssh_source)
        for pool in pools:
            if pool.key_pair.generated:
                logger.info("%s pool: generating key pair %s", pool.name, pool.key_pair.construct_id)
            else:
                logger.info("%s pool: importing key pair %s", pool.name, pool.key_pair.imported_name)
    else:
        logger.info("SSH access disabled; no key pairs attached")

    graph = assemble_graph(
        network, identity, groups, services, pools, database, edge, alarm, release
    )
    logger.debug("Topology has %d resources and %d edges", len(graph.nodes), len(graph.edges))

    return TopologyPlan(
        config=config,
        network=network,
        identity=identity,
        security_groups=groups,
        services=services,
        pools=pools,
        database=database,
        edge=edge,
        alarm=alarm,
        release=release,
        graph=graph,
    )
