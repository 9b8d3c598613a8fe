"""Shared fixtures for the test suite."""
import os
from datetime import datetime, timezone
from unittest.mock import patch

import boto3
import pytest
from moto import mock_aws

from processor.models import Event
from storage.event_store import DynamoDBEventStore

TABLE_NAME = 'test-events'


@pytest.fixture(autouse=True)
def aws_env():
    """Fake AWS credentials and region so boto3 never reaches real AWS."""
    env_vars = {
        'AWS_ACCESS_KEY_ID': 'testing',
        'AWS_SECRET_ACCESS_KEY': 'testing',
        'AWS_SESSION_TOKEN': 'testing',
        'AWS_DEFAULT_REGION': 'us-east-1'
    }
    with patch.dict(os.environ, env_vars):
        yield


@pytest.fixture
def dynamodb_table():
    """Create a mock DynamoDB table for testing."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')
        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[
                {'AttributeName': 'event_id', 'KeyType': 'HASH'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'event_id', 'AttributeType': 'S'}
            ],
            BillingMode='PAY_PER_REQUEST'
        )
        yield table


@pytest.fixture
def event_store(dynamodb_table):
    """Create DynamoDBEventStore instance with mock table."""
    return DynamoDBEventStore(TABLE_NAME)


@pytest.fixture
def now():
    return datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def make_draft(**overrides) -> Event:
    """Build a normalized draft with sensible defaults."""
    fields = dict(
        title='Jazz Night',
        source='Eventbrite',
        source_url='https://x/1',
        date_text='2026-10-24T20:00:00+11:00',
        start_date=datetime(2026, 10, 24, 9, 0, tzinfo=timezone.utc),
        venue_name='Bar A',
        venue_address='1 George St, Sydney, NSW',
        city='Sydney',
        description='Live jazz all night',
        category=['Music'],
        image_url='https://x/1.jpg'
    )
    fields.update(overrides)
    return Event(**fields)


@pytest.fixture
def draft_factory():
    """Factory for normalized drafts."""
    return make_draft
