#!/usr/bin/env python3
from pathlib import Path

import aws_cdk as cdk

from notes_app.config import load_config, load_env_file
from notes_app.stack import NotesAppStack

# Load environment variables from .env file if it exists
load_env_file(Path(__file__).parent / ".env")

# Account and region come from the CDK CLI (CDK_DEFAULT_*) or AWS_* overrides
config = load_config(use_sts=True)

app = cdk.App()

NotesAppStack(
    app,
    "NotesAppStack",
    config=config,
    env=cdk.Environment(account=config.account, region=config.region),
    description="Notes app - DynamoDB tables, Lambda function and AppSync API",
)

app.synth()
