import json

import pytest

from mysql_sync.bootstrap import Bootstrapper, parse_users, user_statements
from mysql_sync.errors import ConfigurationError, TargetUnavailableError
from mysql_sync.schemas import UserGrant

from .conftest import FakeRunner

USERS = [
    {"user": "app", "password": "app-pw-1", "host": "%", "privileges": "ALL PRIVILEGES"},
    {"user": "report", "password": "it's-secret", "host": "10.0.%", "privileges": "SELECT", "database": "shop"},
]


def test_parse_users():
    users = parse_users(json.dumps(USERS))

    assert [u.user for u in users] == ["app", "report"]
    assert users[1].host == "10.0.%"
    assert "it's-secret" not in repr(users[1])


@pytest.mark.parametrize("raw, message", [
    ("[{", "not valid JSON"),
    ('{"user": "app"}', "must be a JSON list"),
    ('[{"password": "x"}]', "entry 0 is invalid"),
    ('[{"user": "x", "password": "y", "privileges": "ALL; DROP DATABASE shop"}]', "entry 0 is invalid"),
])
def test_parse_users_rejects_bad_input(raw, message):
    with pytest.raises(ConfigurationError, match=message):
        parse_users(raw)


def test_user_statements():
    sql = user_statements(UserGrant(user="report", password="it's", host="%", privileges="SELECT"), "shop")

    assert sql == (
        "CREATE USER IF NOT EXISTS 'report'@'%' IDENTIFIED BY 'it''s';\n"
        "GRANT SELECT ON `shop`.* TO 'report'@'%';\n"
        "FLUSH PRIVILEGES;\n"
    )


def test_user_statements_without_database_grant_everything():
    sql = user_statements(UserGrant(user="app", password="pw"), None)

    assert "GRANT ALL PRIVILEGES ON *.* TO 'app'@'%';" in sql


@pytest.fixture
def bootstrap_config(make_config):
    return make_config(TARGET_CONTAINER="mysql_local", MYSQL_USERS_JSON=json.dumps(USERS))


def test_bootstrap_is_idempotent(world, runner, bootstrap_config):
    world.container_running = False
    world.target_up = False
    bootstrapper = Bootstrapper(bootstrap_config, runner=runner, retries=3, interval=0)

    assert bootstrapper.run() == 2
    assert bootstrapper.run() == 2

    assert world.users == {("app", "%"), ("report", "10.0.%")}
    assert ("SELECT", "`shop`.*", "report", "10.0.%") in world.grants
    compose = [c for c in runner.commands if c.args[:2] == ("docker", "compose") and "up" in c.args]
    assert compose[0].args[-3:] == ("up", "-d", "mysql_local")


def test_user_passwords_are_sent_on_stdin(world, runner, bootstrap_config):
    Bootstrapper(bootstrap_config, runner=runner, interval=0).run()

    assert not any("app-pw-1" in arg for c in runner.commands for arg in c.args)
    assert any(data and b"app-pw-1" in data for data in runner.inputs)


def test_missing_tools(world, bootstrap_config):
    runner = FakeRunner(world, tools=("docker", "mysql"))

    with pytest.raises(ConfigurationError, match="mysqldump, gzip, gunzip"):
        Bootstrapper(bootstrap_config, runner=runner).run()


def test_target_never_ready(world, runner, bootstrap_config):
    world.target_up = False
    bootstrapper = Bootstrapper(bootstrap_config, runner=runner, retries=2, interval=0)

    with pytest.raises(TargetUnavailableError) as exc_info:
        bootstrapper.run(start=False)

    assert exc_info.value.step == "bootstrap"
    assert world.users == set()


def test_invalid_users_fail_before_anything_runs(runner, make_config):
    config = make_config(MYSQL_USERS_JSON="not json")

    with pytest.raises(ConfigurationError):
        Bootstrapper(config, runner=runner).run()

    assert runner.commands == []
