from agenda_sync.services import session_machine as machine
from agenda_sync.services.host_policy import (
    AllowList,
    HostAccess,
    HostAllowListConfig,
    HostCredential,
    SharedSecret,
    policy_from_dict,
)

T0 = 1_700_000_000_000


def test_allow_list_config_parsing():
    config = HostAllowListConfig.parse(" 1, 2 ,,3 ")
    assert config.host_ids == frozenset({"1", "2", "3"})
    assert config.allow_all is False
    assert config.permits("2") is True
    assert config.permits("9") is False
    assert config.permits(None) is False

    everyone = HostAllowListConfig.parse(["*"])
    assert everyone.permits("anyone") is True
    assert everyone.summary() == {"allowAll": True, "hostIdsCount": 0}


def test_shared_secret_latches_first_key_holder_only():
    session = machine.new_session("R1", SharedSecret(key="KEY123"), T0)
    policy = session.host_policy

    assert policy.try_latch(session, HostCredential(client_id="c1", host_key="nope")) is False
    assert policy.try_latch(session, HostCredential(client_id="c1", host_key="KEY123")) is True
    assert session.host_user_id == "c1"
    assert policy.try_latch(session, HostCredential(client_id="c2", host_key="KEY123")) is False

    assert policy.check(session, HostCredential(client_id="c2", host_key="KEY123")) is HostAccess.GRANTED
    assert policy.check(session, HostCredential(client_id="c1")) is HostAccess.NOT_HOST


def test_allow_list_latches_only_allowed_users():
    config = HostAllowListConfig.parse("host-1")
    session = machine.new_session("R2", AllowList(config=config), T0)
    policy = session.host_policy

    assert policy.try_latch(session, HostCredential(user_id="guest")) is False
    assert policy.try_latch(session, HostCredential(user_id="host-1")) is True
    assert policy.check(session, HostCredential(user_id="host-1")) is HostAccess.GRANTED
    assert policy.check(session, HostCredential(user_id="guest")) is HostAccess.NOT_HOST


def test_allow_list_revokes_host_removed_from_config():
    session = machine.new_session(
        "R3",
        AllowList(config=HostAllowListConfig.parse("someone-else")),
        T0,
        host_user_id="host-1",
    )

    access = session.host_policy.check(session, HostCredential(user_id="host-1"))

    assert access is HostAccess.REVOKED


def test_allow_list_host_key_fallback():
    config = HostAllowListConfig.parse("")
    session = machine.new_session("R4", AllowList(config=config), T0)
    policy = session.host_policy
    credential = HostCredential(client_id="c1", user_id="u1", host_key="FALLBACK")

    assert policy.try_latch(session, credential, allow_fallback=False) is False
    assert policy.try_latch(session, credential, allow_fallback=True) is True
    assert session.host_user_id == "c1"
    assert session.host_key_fallback == "FALLBACK"
    assert policy.check(session, HostCredential(client_id="c9", host_key="FALLBACK")) is HostAccess.GRANTED


def test_policy_from_dict():
    config = HostAllowListConfig.parse("host-1")
    assert policy_from_dict({"mode": "shared_secret", "key": "K"}, config) == SharedSecret(key="K")
    assert isinstance(policy_from_dict({"mode": "allow_list"}, config), AllowList)
    assert isinstance(policy_from_dict(None, config), AllowList)
