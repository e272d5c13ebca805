#!/usr/bin/env python3
import logging
from typing import Dict, Optional

import aws_cdk as cdk
from aws_cdk import (
    Stack,
    aws_autoscaling as autoscaling,
    aws_certificatemanager as acm,
    aws_cloudwatch as cloudwatch,
    aws_cloudwatch_actions as cw_actions,
    aws_codedeploy as codedeploy,
    aws_ec2 as ec2,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_logs as logs,
    aws_rds as rds,
    aws_s3 as s3,
    aws_secretsmanager as secretsmanager,
    aws_sns as sns,
    aws_sns_subscriptions as subscriptions,
    aws_ssm as ssm,
    Duration,
    RemovalPolicy,
    CfnOutput,
)
from constructs import Construct, IConstruct

from stacks.bootstrap import render_bootstrap_script
from stacks.config import StackConfig
from stacks.errors import TopologyReferenceError
from stacks.topology import (
    ComputePoolSpec,
    CpuArchitecture,
    HealthCheckKind,
    IngressRule,
    KeyPairSpec,
    RoleSpec,
    SecurityGroupSpec,
    SubnetKind,
    TopologyPlan,
    build_topology,
)

logger = logging.getLogger(__name__)

SUBNET_TYPES = {
    SubnetKind.PUBLIC: ec2.SubnetType.PUBLIC,
    SubnetKind.ISOLATED: ec2.SubnetType.PRIVATE_ISOLATED,
}

CPU_TYPES = {
    CpuArchitecture.X86_64: ec2.AmazonLinuxCpuType.X86_64,
    CpuArchitecture.ARM_64: ec2.AmazonLinuxCpuType.ARM_64,
}

POSTGRES_VERSIONS = {
    "17": rds.PostgresEngineVersion.VER_17,
}

STORAGE_TYPES = {
    "gp2": rds.StorageType.GP2,
}

REMOVAL_POLICIES = {
    "snapshot": RemovalPolicy.SNAPSHOT,
}

LISTENER_PROTOCOLS = {
    "HTTP": elbv2.ApplicationProtocol.HTTP,
    "HTTPS": elbv2.ApplicationProtocol.HTTPS,
}

DEPLOYMENT_CONFIGS = {
    "one-at-a-time": codedeploy.ServerDeploymentConfig.ONE_AT_A_TIME,
}

HEALTH_CHECKS = {
    HealthCheckKind.ELB: autoscaling.HealthCheck.elb,
    HealthCheckKind.EC2: autoscaling.HealthCheck.ec2,
}


class PreprodPolisStack(Stack):
    """Renders a TopologyPlan for the preprod Polis environment into CDK constructs."""

    def __init__(
        self, scope: Construct, construct_id: str, config: StackConfig, **kwargs
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.config = config
        self.plan: TopologyPlan = build_topology(config)
        self._resources: Dict[str, IConstruct] = {}

        self._render_network()
        self._render_shared_services()
        self._render_identity()
        self._render_security_groups()
        self._render_compute_pools()
        self._render_data_tier()
        self._render_edge()
        self._render_alarm()
        self._render_release_pipeline()
        self._apply_ordering()
        self._check_rendered()
        self._render_outputs()

        cdk.Tags.of(self).add("Environment", "preprod")
        if config.branch:
            cdk.Tags.of(self).add("Branch", config.branch)

    # ------------------------------------------------------------------
    # Resource registry
    # ------------------------------------------------------------------

    def _register(self, name: str, resource: IConstruct) -> IConstruct:
        if name in self._resources:
            raise TopologyReferenceError(f"Resource {name!r} rendered twice")
        self._resources[name] = resource
        return resource

    def _require(self, name: str) -> IConstruct:
        try:
            return self._resources[name]
        except KeyError:
            raise TopologyReferenceError(
                f"Resource {name!r} is referenced before it was built"
            ) from None

    def resource(self, name: str) -> IConstruct:
        """Look up a rendered construct by its topology name."""
        return self._require(name)

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    def _render_network(self) -> None:
        network = self.plan.network
        self.vpc = ec2.Vpc(
            self,
            network.vpc_id,
            max_azs=network.max_azs,
            nat_gateways=network.nat_gateways,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    cidr_mask=group.cidr_mask,
                    name=group.name,
                    subnet_type=SUBNET_TYPES[group.kind],
                )
                for group in network.subnet_groups
            ],
        )
        self._register(network.vpc_id, self.vpc)

    # ------------------------------------------------------------------
    # Logging, alarm topic, env secret
    # ------------------------------------------------------------------

    def _render_shared_services(self) -> None:
        services = self.plan.services

        self.alarm_topic = sns.Topic(
            self,
            services.alarm_topic_id,
            display_name=services.alarm_topic_display_name,
        )
        self.alarm_topic.add_subscription(
            subscriptions.EmailSubscription(services.notification_email)
        )
        self._register(services.alarm_topic_id, self.alarm_topic)

        self.log_group = logs.LogGroup(self, services.log_group_id)
        self._register(services.log_group_id, self.log_group)

        # Placeholder; the values are written out-of-band from the env file
        self.web_app_env_secret = secretsmanager.Secret(
            self,
            services.env_secret_id,
            secret_name=services.env_secret_name,
            description=services.env_secret_description,
        )
        self._register(services.env_secret_id, self.web_app_env_secret)

    # ------------------------------------------------------------------
    # IAM
    # ------------------------------------------------------------------

    def _render_role(self, spec: RoleSpec) -> iam.Role:
        role = iam.Role(
            self,
            spec.construct_id,
            assumed_by=iam.ServicePrincipal(spec.assumed_by),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(name)
                for name in spec.managed_policies
            ],
        )
        for statement in spec.inline_statements:
            role.add_to_policy(
                iam.PolicyStatement(
                    effect=iam.Effect.ALLOW,
                    actions=list(statement.actions),
                    resources=list(statement.resources),
                )
            )
        self._register(spec.construct_id, role)
        return role

    def _render_identity(self) -> None:
        identity = self.plan.identity
        self.instance_role = self._render_role(identity.instance_role)
        self.code_deploy_role = self._render_role(identity.deploy_role)

    # ------------------------------------------------------------------
    # Security groups
    # ------------------------------------------------------------------

    def _peer(self, rule: IngressRule) -> ec2.IPeer:
        if rule.cidr:
            return ec2.Peer.ipv4(rule.cidr)
        return self._require(rule.peer)

    def _render_security_group(self, spec: SecurityGroupSpec) -> ec2.SecurityGroup:
        group = ec2.SecurityGroup(
            self,
            spec.construct_id,
            vpc=self._require(self.plan.network.vpc_id),
            description=spec.description,
            allow_all_outbound=spec.allow_all_outbound,
        )
        for rule in spec.ingress:
            group.add_ingress_rule(self._peer(rule), ec2.Port.tcp(rule.port), rule.description)
        self._register(spec.construct_id, group)
        return group

    def _render_security_groups(self) -> None:
        groups = self.plan.security_groups
        self.web_security_group = self._render_security_group(groups.web)
        self.math_worker_security_group = self._render_security_group(groups.math_worker)
        self.lb_security_group = self._render_security_group(groups.load_balancer)

    # ------------------------------------------------------------------
    # Compute pools
    # ------------------------------------------------------------------

    def _render_key_pair(self, spec: Optional[KeyPairSpec]) -> Optional[ec2.IKeyPair]:
        if spec is None:
            return None
        if spec.generated:
            key_pair = ec2.KeyPair(self, spec.construct_id)
        else:
            key_pair = ec2.KeyPair.from_key_pair_name(
                self, spec.construct_id, spec.imported_name
            )
        self._register(spec.construct_id, key_pair)
        return key_pair

    def _render_pool(self, pool: ComputePoolSpec):
        vpc = self._require(self.plan.network.vpc_id)
        security_group = self._require(pool.security_group_id)
        role = self._require(pool.role_id)
        log_group = self._require(pool.log_destination_id)
        key_pair = self._render_key_pair(pool.key_pair)

        instance_type = ec2.InstanceType(pool.instance_shape)
        machine_image = ec2.MachineImage.latest_amazon_linux2023(
            cpu_type=CPU_TYPES[pool.image.cpu]
        )
        user_data = ec2.UserData.for_linux()
        user_data.add_commands(
            render_bootstrap_script(log_group.log_group_name, pool.service_label, self.region)
        )
        subnets = ec2.SubnetSelection(subnet_type=SUBNET_TYPES[pool.subnet_kind])

        launch_template = ec2.LaunchTemplate(
            self,
            pool.launch_template_id,
            machine_image=machine_image,
            user_data=user_data,
            instance_type=instance_type,
            security_group=security_group,
            key_pair=key_pair,
            role=role,
        )
        self._register(pool.launch_template_id, launch_template)

        # Singleton instance boots from the launch template's user data
        instance = ec2.Instance(
            self,
            pool.instance_id,
            vpc=vpc,
            instance_type=instance_type,
            machine_image=machine_image,
            security_group=security_group,
            key_pair=key_pair,
            role=role,
            user_data=launch_template.user_data,
            vpc_subnets=subnets,
        )
        self._register(pool.instance_id, instance)

        health_check = HEALTH_CHECKS[pool.health_check.kind](
            grace=Duration.minutes(pool.health_check.grace_minutes)
        )

        asg = autoscaling.AutoScalingGroup(
            self,
            pool.asg_id,
            vpc=vpc,
            launch_template=launch_template,
            min_capacity=pool.min_capacity,
            max_capacity=pool.max_capacity,
            vpc_subnets=subnets,
            health_check=health_check,
        )
        self._register(pool.asg_id, asg)

        return launch_template, instance, asg, key_pair

    def _render_compute_pools(self) -> None:
        pools = self.plan.pools
        (
            self.web_launch_template,
            self.web_instance,
            self.web_asg,
            self.web_key_pair,
        ) = self._render_pool(pools.web)
        (
            self.math_worker_launch_template,
            self.math_worker_instance,
            self.math_worker_asg,
            self.math_worker_key_pair,
        ) = self._render_pool(pools.math_worker)

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    def _render_data_tier(self) -> None:
        spec = self.plan.database
        vpc = self._require(self.plan.network.vpc_id)

        self.db_subnet_group = rds.SubnetGroup(
            self,
            spec.subnet_group_id,
            vpc=vpc,
            subnet_group_name=spec.subnet_group_name,
            description="Subnet group for the preprod postgres database",
            vpc_subnets=ec2.SubnetSelection(subnet_type=SUBNET_TYPES[spec.subnet_kind]),
            removal_policy=RemovalPolicy.DESTROY,
        )
        self._register(spec.subnet_group_id, self.db_subnet_group)

        # Snapshot on delete; harder to destroy than anything else in the stack
        self.database = rds.DatabaseInstance(
            self,
            spec.construct_id,
            engine=rds.DatabaseInstanceEngine.postgres(
                version=POSTGRES_VERSIONS[spec.engine_version]
            ),
            instance_type=ec2.InstanceType(spec.instance_shape),
            vpc=vpc,
            allocated_storage=spec.allocated_storage_gib,
            storage_type=STORAGE_TYPES[spec.storage_type],
            credentials=rds.Credentials.from_generated_secret(spec.username),
            database_name=spec.database_name,
            removal_policy=REMOVAL_POLICIES[spec.removal_policy],
            deletion_protection=spec.deletion_protection,
            publicly_accessible=spec.publicly_accessible,
            subnet_group=self.db_subnet_group,
        )
        self._register(spec.construct_id, self.database)

        for rule in spec.ingress:
            self.database.connections.allow_from(
                self._peer(rule), ec2.Port.tcp(rule.port), rule.description
            )

        values = {
            "secret_arn": self.database.secret.secret_arn,
            "host": self.database.db_instance_endpoint_address,
            "port": self.database.db_instance_endpoint_port,
        }
        self.db_parameters = []
        for parameter in spec.parameters:
            ssm_parameter = ssm.StringParameter(
                self,
                parameter.construct_id,
                parameter_name=parameter.name,
                string_value=values[parameter.attribute],
                description=parameter.description,
            )
            self._register(parameter.construct_id, ssm_parameter)
            self.db_parameters.append(ssm_parameter)

    # ------------------------------------------------------------------
    # Load balancer
    # ------------------------------------------------------------------

    def _render_edge(self) -> None:
        spec = self.plan.edge
        vpc = self._require(self.plan.network.vpc_id)
        target_spec = spec.target_group

        self.load_balancer = elbv2.ApplicationLoadBalancer(
            self,
            spec.construct_id,
            vpc=vpc,
            internet_facing=spec.internet_facing,
            security_group=self._require(spec.security_group_id),
            idle_timeout=Duration.seconds(spec.idle_timeout_seconds),
        )
        self._register(spec.construct_id, self.load_balancer)

        self.web_target_group = elbv2.ApplicationTargetGroup(
            self,
            target_spec.construct_id,
            vpc=vpc,
            port=target_spec.port,
            protocol=LISTENER_PROTOCOLS[target_spec.protocol],
            targets=[self._require(target_spec.target_asg_id)],
            health_check=elbv2.HealthCheck(
                path=target_spec.health_check_path,
                interval=Duration.seconds(target_spec.interval_seconds),
                healthy_threshold_count=target_spec.healthy_threshold,
                unhealthy_threshold_count=target_spec.unhealthy_threshold,
                timeout=Duration.seconds(target_spec.timeout_seconds),
            ),
        )
        self._register(target_spec.construct_id, self.web_target_group)

        self.certificate = acm.Certificate(
            self,
            spec.certificate.construct_id,
            domain_name=spec.certificate.domain_name,
            validation=acm.CertificateValidation.from_dns(),
        )
        self._register(spec.certificate.construct_id, self.certificate)

        self.listeners = {}
        for listener_spec in spec.listeners:
            certificates = None
            if listener_spec.certificate_id:
                certificates = [
                    elbv2.ListenerCertificate.from_certificate_manager(
                        self._require(listener_spec.certificate_id)
                    )
                ]
            listener = self.load_balancer.add_listener(
                listener_spec.construct_id,
                port=listener_spec.port,
                protocol=LISTENER_PROTOCOLS[listener_spec.protocol],
                certificates=certificates,
                open=True,
                default_target_groups=[self.web_target_group],
            )
            self._register(listener_spec.construct_id, listener)
            self.listeners[listener_spec.port] = listener

    # ------------------------------------------------------------------
    # Deployment alarm
    # ------------------------------------------------------------------

    def _render_alarm(self) -> None:
        spec = self.plan.alarm
        target_group = self._require(spec.target_group_id)
        load_balancer = self._require(spec.load_balancer_id)

        self.unhealthy_hosts_alarm = cloudwatch.Alarm(
            self,
            spec.construct_id,
            alarm_name=spec.alarm_name,
            metric=cloudwatch.Metric(
                namespace=spec.namespace,
                metric_name=spec.metric_name,
                dimensions_map={
                    "TargetGroup": target_group.target_group_full_name,
                    "LoadBalancer": load_balancer.load_balancer_full_name,
                },
                statistic=spec.statistic,
                period=Duration.minutes(spec.period_minutes),
            ),
            threshold=spec.threshold,
            evaluation_periods=spec.evaluation_periods,
            comparison_operator=cloudwatch.ComparisonOperator.GREATER_THAN_OR_EQUAL_TO_THRESHOLD,
            treat_missing_data=cloudwatch.TreatMissingData.NOT_BREACHING,
        )
        self.unhealthy_hosts_alarm.add_alarm_action(
            cw_actions.SnsAction(self._require(spec.topic_id))
        )
        self._register(spec.construct_id, self.unhealthy_hosts_alarm)

    # ------------------------------------------------------------------
    # CodeDeploy
    # ------------------------------------------------------------------

    def _render_release_pipeline(self) -> None:
        spec = self.plan.release

        self.application = codedeploy.ServerApplication(
            self,
            spec.application_id,
            application_name=spec.application_name,
        )
        self._register(spec.application_id, self.application)

        self.deployment_bucket = s3.Bucket(
            self,
            spec.bucket.construct_id,
            bucket_name=f"{spec.bucket.name_prefix}-{self.account}-{self.region}",
            removal_policy=RemovalPolicy.DESTROY,
            auto_delete_objects=spec.bucket.auto_delete_objects,
            versioned=spec.bucket.versioned,
            public_read_access=False,
            block_public_access=s3.BlockPublicAccess.BLOCK_ALL,
        )
        self.deployment_bucket.grant_read(self._require(spec.bucket.read_grantee_id))
        self._register(spec.bucket.construct_id, self.deployment_bucket)

        self.deployment_group = codedeploy.ServerDeploymentGroup(
            self,
            spec.deployment_group_id,
            application=self.application,
            deployment_group_name=spec.deployment_group_name,
            auto_scaling_groups=[self._require(asg_id) for asg_id in spec.asg_ids],
            deployment_config=DEPLOYMENT_CONFIGS[spec.deployment_config],
            role=self._require(spec.role_id),
            install_agent=spec.install_agent,
            alarms=[self._require(alarm_id) for alarm_id in spec.alarm_ids],
            auto_rollback=codedeploy.AutoRollbackConfig(
                failed_deployment=spec.rollback.failed_deployment,
                stopped_deployment=spec.rollback.stopped_deployment,
                deployment_in_alarm=spec.rollback.deployment_in_alarm,
            ),
        )
        self._register(spec.deployment_group_id, self.deployment_group)

    # ------------------------------------------------------------------
    # Ordering and validation
    # ------------------------------------------------------------------

    def _apply_ordering(self) -> None:
        # Bootstrap scripts expect these resources to exist on first boot
        for edge in self.plan.graph.ordering_edges():
            self._require(edge.target).node.add_dependency(self._require(edge.source))
            logger.debug("%s waits on %s", edge.target, edge.source)

    def _check_rendered(self) -> None:
        missing = [name for name in self.plan.graph.names() if name not in self._resources]
        if missing:
            raise TopologyReferenceError(f"Planned but never built: {', '.join(missing)}")

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def _render_outputs(self) -> None:
        CfnOutput(
            self,
            "LoadBalancerDnsName",
            value=self.load_balancer.load_balancer_dns_name,
            description="Public DNS name of the preprod load balancer",
        )

        CfnOutput(
            self,
            "LogGroupName",
            value=self.log_group.log_group_name,
            description="CloudWatch log group receiving container logs",
        )

        CfnOutput(
            self,
            "DeploymentBucketName",
            value=self.deployment_bucket.bucket_name,
            description="S3 bucket for CodeDeploy deployment packages",
        )

        for parameter in self.plan.database.parameters:
            CfnOutput(
                self,
                f"{parameter.construct_id}Name",
                value=parameter.name,
                description=parameter.description,
            )

        for pool in self.plan.pools:
            if pool.key_pair is None or not pool.key_pair.generated:
                continue
            key_pair = self._require(pool.key_pair.construct_id)
            CfnOutput(
                self,
                f"{pool.key_pair.construct_id}PrivateKeyParameter",
                value=key_pair.private_key.parameter_name,
                description=f"SSM parameter holding the generated {pool.name} private key",
            )
