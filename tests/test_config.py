from relayci.config import DEFAULT_CACHE_DIR, Settings


def test_defaults():
    settings = Settings.from_env({})
    assert settings.cache_dir == DEFAULT_CACHE_DIR
    assert settings.workers is None
    assert settings.protected_branches == ["master", "main"]
    assert not settings.debug


def test_environment_overrides():
    settings = Settings.from_env({
        "RELAYCI_CACHE_DIR": "/var/cache/relayci",
        "RELAYCI_WORKERS": "3",
        "RELAYCI_PROTECTED_BRANCHES": "release, master ,",
        "RELAYCI_DEBUG": "yes",
        "RELAYCI_REGISTRY_USERNAME": "bot",
    })
    assert settings.cache_dir == "/var/cache/relayci"
    assert settings.workers == 3
    assert settings.protected_branches == ["release", "master"]
    assert settings.debug
    assert settings.registry_username == "bot"
    assert settings.registry_password is None
