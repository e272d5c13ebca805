"""
Unit tests for the topology planner
Tests security rules, key pairs, database reachability, health checks
and the dependency graph without synthesizing CDK
"""

import pytest

from stacks.config import StackConfig
from stacks.errors import ConfigurationError, PolicyLimitError
from stacks.graph import EdgeKind, NodeKind
from stacks.topology import (
    CpuArchitecture,
    HealthCheckKind,
    HealthCheckPolicy,
    RoleSpec,
    PolicyStatementSpec,
    SubnetKind,
    build_topology,
    check_policy_limits,
    partition_network,
    shape_architecture,
)


@pytest.fixture
def ssh_disabled():
    return build_topology(StackConfig(env_file=".env"))


@pytest.fixture
def ssh_enabled():
    return build_topology(StackConfig(env_file=".env", enable_ssh_access=True))


@pytest.fixture
def scenario():
    return build_topology(
        StackConfig(
            env_file=".env",
            enable_ssh_access=True,
            ssh_allowed_ip_range="10.0.0.0/16",
            web_key_pair_name="wkey",
        )
    )


class TestNetworkPartitioner:
    """Test class for the network layout"""

    def test_one_public_one_isolated(self, ssh_disabled):
        """Test that there is exactly one public and one isolated group"""
        kinds = [group.kind for group in ssh_disabled.network.subnet_groups]
        assert kinds == [SubnetKind.PUBLIC, SubnetKind.ISOLATED]
        assert all(group.cidr_mask == 24 for group in ssh_disabled.network.subnet_groups)

    def test_no_nat_gateways(self, ssh_disabled):
        """Test that isolated subnets get no NAT path"""
        assert ssh_disabled.network.nat_gateways == 0
        assert ssh_disabled.network.max_azs == 2

    def test_masks_per_subnet_kind(self):
        """Test that public and isolated groups take their own mask"""
        network = partition_network(public_cidr_mask=26, isolated_cidr_mask=20)
        assert network.group(SubnetKind.PUBLIC).cidr_mask == 26
        assert network.group(SubnetKind.ISOLATED).cidr_mask == 20

    @pytest.mark.parametrize(
        "kwargs,key",
        [
            ({"max_azs": 0}, "max_azs"),
            ({"public_cidr_mask": 8}, "public_cidr_mask"),
            ({"isolated_cidr_mask": 30}, "isolated_cidr_mask"),
        ],
    )
    def test_invalid_layout(self, kwargs, key):
        """Test that impossible layouts are rejected"""
        with pytest.raises(ConfigurationError, match=key):
            partition_network(**kwargs)


class TestIdentityComposer:
    """Test class for IAM roles"""

    def test_instance_role(self, ssh_disabled):
        """Test the instance role trust and capability bundles"""
        role = ssh_disabled.identity.instance_role
        assert role.assumed_by == "ec2.amazonaws.com"
        assert set(role.managed_policies) == {
            "AmazonSSMManagedInstanceCore",
            "service-role/AmazonEC2RoleforAWSCodeDeploy",
            "SecretsManagerReadWrite",
            "AmazonEC2ContainerRegistryReadOnly",
            "CloudWatchLogsFullAccess",
        }
        (statement,) = role.inline_statements
        assert statement.actions == ("s3:PutObject", "s3:PutObjectAcl", "s3:AbortMultipartUpload")
        assert statement.resources == ("arn:aws:s3:::*", "arn:aws:s3:::*/*")

    def test_deploy_role(self, ssh_disabled):
        """Test the CodeDeploy service role"""
        role = ssh_disabled.identity.deploy_role
        assert role.assumed_by == "codedeploy.amazonaws.com"
        assert role.managed_policies == ("service-role/AWSCodeDeployRole",)

    def test_too_many_managed_policies(self):
        """Test that exceeding the managed policy quota fails fast"""
        role = RoleSpec("Big", "ec2.amazonaws.com", tuple(f"Policy{i}" for i in range(11)))
        with pytest.raises(PolicyLimitError, match="managed policies"):
            check_policy_limits(role)

    def test_inline_policy_too_large(self):
        """Test that an oversized inline policy fails instead of truncating"""
        statement = PolicyStatementSpec(
            actions=("s3:GetObject",),
            resources=tuple(f"arn:aws:s3:::bucket-{i}/*" for i in range(500)),
        )
        role = RoleSpec("Big", "ec2.amazonaws.com", (), (statement,))
        with pytest.raises(PolicyLimitError, match="inline policy"):
            check_policy_limits(role)


class TestSecurityRules:
    """Test class for derived security groups"""

    def test_no_ssh_when_disabled(self, ssh_disabled):
        """Test that no group carries SSH and no pool has a key pair"""
        for group in ssh_disabled.security_groups:
            assert group.rules_on_port(22) == ()
        for pool in ssh_disabled.pools:
            assert pool.key_pair is None

    def test_ssh_defaults_open(self, ssh_enabled):
        """Test that SSH without a range uses the open default"""
        groups = ssh_enabled.security_groups
        for group in (groups.web, groups.math_worker):
            (rule,) = group.rules_on_port(22)
            assert rule.cidr == "0.0.0.0/0"
        assert groups.load_balancer.rules_on_port(22) == ()

    def test_web_traffic_on_lb_and_web(self, ssh_disabled):
        """Test that HTTP and HTTPS are open on both the LB and the web group"""
        groups = ssh_disabled.security_groups
        for group in (groups.web, groups.load_balancer):
            for port in (80, 443):
                (rule,) = group.rules_on_port(port)
                assert rule.cidr == "0.0.0.0/0"
        assert groups.math_worker.ingress == ()

    def test_all_outbound(self, ssh_disabled):
        """Test that every group allows outbound traffic"""
        assert all(group.allow_all_outbound for group in ssh_disabled.security_groups)


class TestComputePools:
    """Test class for compute pools"""

    def test_pool_shapes(self, ssh_disabled):
        """Test shapes, architectures and labels per pool"""
        web, math_worker = ssh_disabled.pools
        assert (web.instance_shape, web.image.cpu, web.service_label) == (
            "t3.medium",
            CpuArchitecture.X86_64,
            "server",
        )
        assert (math_worker.instance_shape, math_worker.image.cpu, math_worker.service_label) == (
            "r8g.xlarge",
            CpuArchitecture.ARM_64,
            "math",
        )

    def test_health_checks(self, ssh_disabled):
        """Test that only the web pool relies on load balancer health"""
        web, math_worker = ssh_disabled.pools
        assert web.health_check.kind is HealthCheckKind.ELB
        assert math_worker.health_check.kind is HealthCheckKind.EC2
        assert web.health_check.grace_minutes == math_worker.health_check.grace_minutes == 15

    def test_health_check_kind_parsed(self):
        """Test that a plain string becomes a health check kind"""
        assert HealthCheckPolicy("elb").kind is HealthCheckKind.ELB

    def test_unknown_health_check_kind(self):
        """Test that an unsupported health check is rejected, not defaulted"""
        with pytest.raises(ConfigurationError, match="alb"):
            HealthCheckPolicy("alb")

    def test_scaling_bounds(self, ssh_disabled):
        """Test min/max capacity of both pools"""
        for pool in ssh_disabled.pools:
            assert (pool.min_capacity, pool.max_capacity) == (1, 2)
            assert pool.subnet_kind == SubnetKind.PUBLIC

    def test_one_template_two_consumers(self, ssh_disabled):
        """Test that the instance and ASG of a pool share one launch template"""
        graph = ssh_disabled.graph
        for pool in ssh_disabled.pools:
            assert pool.launch_template_id in graph.predecessors(pool.instance_id)
            assert pool.launch_template_id in graph.predecessors(pool.asg_id)

    @pytest.mark.parametrize(
        "shape,arch",
        [
            ("t3.medium", CpuArchitecture.X86_64),
            ("r8g.xlarge", CpuArchitecture.ARM_64),
            ("t4g.small", CpuArchitecture.ARM_64),
            ("c7gn.large", CpuArchitecture.ARM_64),
            ("g5.xlarge", CpuArchitecture.X86_64),
        ],
    )
    def test_shape_architecture(self, shape, arch):
        """Test that Graviton shapes are detected"""
        assert shape_architecture(shape) == arch

    def test_unknown_shape(self):
        """Test that unparseable shapes are rejected"""
        with pytest.raises(ConfigurationError):
            shape_architecture("huge")

    def test_scenario_key_pairs(self, scenario):
        """Test imported web key, generated math-worker key, shared SSH range"""
        web, math_worker = scenario.pools
        assert web.key_pair.imported_name == "wkey"
        assert not web.key_pair.generated
        assert math_worker.key_pair.generated
        for group in (scenario.security_groups.web, scenario.security_groups.math_worker):
            (rule,) = group.rules_on_port(22)
            assert rule.cidr == "10.0.0.0/16"


class TestDataTier:
    """Test class for the database plan"""

    def test_database_reachable_only_from_pools(self, ssh_enabled):
        """Test that only the two pool groups may reach the database port"""
        database = ssh_enabled.database
        assert {rule.peer for rule in database.ingress} == {
            ssh_enabled.pools.web.security_group_id,
            ssh_enabled.pools.math_worker.security_group_id,
        }
        assert all(rule.port == database.port == 5432 for rule in database.ingress)
        assert all(rule.cidr is None for rule in database.ingress)

    def test_database_protection(self, ssh_disabled):
        """Test the snapshot policy and isolation of the database"""
        database = ssh_disabled.database
        assert database.subnet_kind == SubnetKind.ISOLATED
        assert database.removal_policy == "snapshot"
        assert database.deletion_protection is True
        assert database.publicly_accessible is False
        assert (database.engine, database.engine_version) == ("postgres", "17")

    def test_discovery_parameters(self, ssh_disabled):
        """Test the three published discovery parameters"""
        names = [parameter.name for parameter in ssh_disabled.database.parameters]
        assert names == [
            "/preprod/polis/db-secret-arn",
            "/preprod/polis/db-host",
            "/preprod/polis/db-port",
        ]


class TestEdge:
    """Test class for the load balancer plan"""

    def test_target_group_health_check(self, ssh_disabled):
        """Test the declared health check values"""
        target_group = ssh_disabled.edge.target_group
        assert target_group.health_check_path == "/api/v3/testConnection"
        assert target_group.healthy_threshold == 2
        assert target_group.unhealthy_threshold == 10
        assert target_group.interval_seconds == 300
        assert target_group.timeout_seconds == 10
        assert target_group.target_asg_id == ssh_disabled.pools.web.asg_id

    def test_listeners(self, ssh_disabled):
        """Test that only the HTTPS listener carries the certificate"""
        edge = ssh_disabled.edge
        assert [(listener.port, listener.certificate_id) for listener in edge.listeners] == [
            (80, None),
            (443, edge.certificate.construct_id),
        ]
        assert edge.certificate.domain_name == "preprod.pol.is"
        assert edge.idle_timeout_seconds == 300


class TestReleasePipeline:
    """Test class for the release pipeline and ordering"""

    def test_deployment_group(self, ssh_disabled):
        """Test the deployment group spans both ASGs one at a time"""
        release = ssh_disabled.release
        assert release.asg_ids == ("PreprodAsg", "AsgMathWorker")
        assert release.deployment_config == "one-at-a-time"
        assert release.rollback.failed_deployment
        assert release.rollback.stopped_deployment
        assert release.rollback.deployment_in_alarm
        assert release.alarm_ids == (ssh_disabled.alarm.construct_id,)

    def test_compute_waits_on_logging_secret_database(self, ssh_enabled):
        """Test incoming ordering edges on every compute node"""
        graph = ssh_enabled.graph
        expected = {"PreprodLogGroup", "PreprodWebAppEnvVarsSecret", "PreprodDatabase"}
        compute = graph.nodes_of_kind(NodeKind.COMPUTE)
        assert {node.name for node in compute} == set(ssh_enabled.compute_ids())
        for node in compute:
            assert set(graph.predecessors(node.name, EdgeKind.ORDERING)) == expected

    def test_database_not_after_compute(self, ssh_enabled):
        """Test that the database has no incoming edge from compute nodes"""
        graph = ssh_enabled.graph
        compute = set(ssh_enabled.compute_ids())
        assert not compute & set(graph.predecessors("PreprodDatabase"))

        order = graph.topological_order()
        for name in compute:
            assert order.index("PreprodDatabase") < order.index(name)


class TestIdempotence:
    """Test class for plan determinism"""

    @pytest.mark.parametrize(
        "config",
        [
            StackConfig(env_file=".env"),
            StackConfig(
                env_file=".env",
                enable_ssh_access=True,
                ssh_allowed_ip_range="10.0.0.0/16",
                web_key_pair_name="wkey",
            ),
        ],
    )
    def test_same_config_same_plan(self, config):
        """Test that two builds from one config are structurally identical"""
        first = build_topology(config)
        second = build_topology(config)
        assert first == second
        assert first.graph.topological_order() == second.graph.topological_order()
