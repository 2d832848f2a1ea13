from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws

from instance_guardian.config import Settings
from instance_guardian.models import AwsCredentials, UserAccount
from instance_guardian.store import Stores, create_tables

# 11:30 in Asia/Kolkata
INSIDE_HOURS = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)
# 01:30 in Asia/Kolkata
OUTSIDE_HOURS = datetime(2026, 3, 10, 20, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so nothing can reach a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def inside_hours():
    return INSIDE_HOURS


@pytest.fixture
def outside_hours():
    return OUTSIDE_HOURS


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def aws():
    with mock_aws():
        yield


@pytest.fixture
def stores(aws, settings):
    client = boto3.client("dynamodb", region_name=settings.table_region)
    create_tables(client, settings.tables)
    return Stores.from_settings(settings, client)


@pytest.fixture
def user():
    return UserAccount(user_id="user-1", username="alice", email="alice@example.com")


@pytest.fixture
def credentials():
    return AwsCredentials(access_key="AKIATESTKEY123456", secret_key="secret")


@pytest.fixture
def registered_user(stores, user, credentials):
    """A user with an email address and stored AWS credentials."""
    stores.accounts.put_user(user)
    stores.accounts.put_credentials(user.user_id, credentials)
    return user
