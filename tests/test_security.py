from gateway.app.security import is_privileged, resolve_identity


def test_is_privileged(monkeypatch):
    monkeypatch.setenv("RL_ADMIN_TOKEN", "tok")
    assert is_privileged("tok")
    assert is_privileged(" tok ")
    assert not is_privileged("nope")
    assert not is_privileged(None)


def test_unset_token_means_nobody_is_privileged(monkeypatch):
    monkeypatch.delenv("RL_ADMIN_TOKEN", raising=False)
    assert not is_privileged("")
    assert not is_privileged("anything")


def test_resolve_identity():
    assert resolve_identity("10.0.0.1", None, False) == "10.0.0.1"
    assert resolve_identity("10.0.0.1", "203.0.113.9, 10.0.0.1", False) == "10.0.0.1"
    assert resolve_identity("10.0.0.1", "203.0.113.9, 10.0.0.1", True) == "203.0.113.9"
    assert resolve_identity(None, " , ", True) is None
    assert resolve_identity("", None, False) is None
