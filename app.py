#!/usr/bin/env python3
import logging

import aws_cdk as cdk

from stacks.config import StackConfig
from stacks.polis_stack import PreprodPolisStack

# Configure logging
logger = logging.getLogger()
logger.setLevel(logging.INFO)
logging.basicConfig(format="%(levelname)s %(name)s: %(message)s")

app = cdk.App()

# Environment configuration
env = cdk.Environment(
    account=app.node.try_get_context("account"),
    region=app.node.try_get_context("region") or "us-east-1",
)

# Stack options from -c context flags
config = StackConfig.from_context(app.node)

PreprodPolisStack(app, "PreprodPolisStack", config=config, env=env)

app.synth()
