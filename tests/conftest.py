import boto3
import fakeredis
import pytest
from botocore.stub import Stubber

from rlock import RLock, RedisStore, DynamoDBStore, LockConfig


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def client(server):
    return fakeredis.FakeRedis(server=server)


@pytest.fixture
def store(client):
    return RedisStore(client)


@pytest.fixture
def locks(store):
    return RLock(store, LockConfig(expiration=5.0, retry_interval=0.01, retry_timeout=1.0))


@pytest.fixture
def aws_env(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def ddb(aws_env):
    table = boto3.resource("dynamodb", region_name="us-east-1").Table("locks")
    with Stubber(table.meta.client) as stubber:
        yield DynamoDBStore(table), stubber
