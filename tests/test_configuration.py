import pytest

from palimpsest.configuration import (
    PalimpsestConfig,
    get_config,
    get_settings,
    to_engine_config,
)
from palimpsest.errors import TranslationProviderConfigurationError


@pytest.fixture
def app_dir(tmp_path, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    for key in PalimpsestConfig.model_fields:
        monkeypatch.delenv(key, raising=False)
    project = tmp_path / "project"
    project.mkdir()
    return project


def test_defaults_without_any_source(app_dir):
    settings = get_settings(app_dir)
    assert settings.LLM_PROVIDER == "openai"
    assert settings.PALIMPSEST_TARGET_LANGUAGE == "zh-CN"
    assert settings.PALIMPSEST_MAX_CONCURRENCY == 3
    assert settings.PALIMPSEST_MAX_TOKENS == 100_000
    assert settings.GLOSSARY == []


def test_layers_apply_in_precedence_order(app_dir, monkeypatch):
    (app_dir / "config.yaml").write_text(
        "PALIMPSEST_TARGET_LANGUAGE: de\nPALIMPSEST_MAX_CONCURRENCY: 5\nPALIMPSEST_MODEL: from-yaml\n",
        encoding="utf-8",
    )
    (app_dir / ".env").write_text("PALIMPSEST_TARGET_LANGUAGE=fr\n", encoding="utf-8")
    monkeypatch.setenv("PALIMPSEST_MAX_CONCURRENCY", "7")

    config = get_config(app_dir)
    settings = config.model()
    assert settings.PALIMPSEST_MODEL == "from-yaml"
    assert settings.PALIMPSEST_TARGET_LANGUAGE == "fr"
    assert settings.PALIMPSEST_MAX_CONCURRENCY == 7
    assert config.source_of("PALIMPSEST_TARGET_LANGUAGE") == "env:.env:PALIMPSEST_TARGET_LANGUAGE"
    assert config.source_of("PALIMPSEST_MODEL").startswith("file:")


def test_project_yaml_overrides_home_yaml(app_dir, tmp_path):
    (tmp_path / "home" / ".palimpsest.yaml").write_text(
        "PALIMPSEST_TARGET_LANGUAGE: ja\nPALIMPSEST_MODEL: home-model\n", encoding="utf-8"
    )
    (app_dir / "palimpsest.yaml").write_text(
        "PALIMPSEST_TARGET_LANGUAGE: ko\n", encoding="utf-8"
    )
    settings = get_settings(app_dir)
    assert settings.PALIMPSEST_TARGET_LANGUAGE == "ko"
    assert settings.PALIMPSEST_MODEL == "home-model"


def test_config_is_cached(app_dir):
    assert get_config(app_dir) is get_config(app_dir)


def test_out_of_range_value_reports_source(app_dir, monkeypatch):
    monkeypatch.setenv("PALIMPSEST_MAX_CONCURRENCY", "20")
    with pytest.raises(TranslationProviderConfigurationError) as excinfo:
        get_settings(app_dir)
    message = str(excinfo.value)
    assert "PALIMPSEST_MAX_CONCURRENCY" in message
    assert "env:process:PALIMPSEST_MAX_CONCURRENCY" in message


def test_unreadable_yaml_is_reported(app_dir):
    (app_dir / "config.yaml").write_text("key: [unclosed\n", encoding="utf-8")
    with pytest.raises(TranslationProviderConfigurationError):
        get_settings(app_dir)


def test_glossary_is_yaml_only(app_dir, monkeypatch):
    (app_dir / "config.yaml").write_text(
        "GLOSSARY:\n  - source: widget\n    target: bidule\n    case_sensitive: true\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("GLOSSARY", "ignored")
    settings = get_settings(app_dir)
    assert settings.GLOSSARY[0].target == "bidule"
    config = to_engine_config(settings, provider="echo")
    assert config.glossary[0].source == "widget"
    assert config.glossary[0].case_sensitive


def test_provider_synonyms_are_normalised():
    assert PalimpsestConfig(LLM_PROVIDER="Azure").LLM_PROVIDER == "azure_openai"
    assert PalimpsestConfig(LLM_PROVIDER="something-else").LLM_PROVIDER == "openai"


def test_engine_config_requires_provider_credentials():
    with pytest.raises(TranslationProviderConfigurationError) as excinfo:
        to_engine_config(PalimpsestConfig())
    assert "OPENAI_API_KEY" in str(excinfo.value)

    with pytest.raises(TranslationProviderConfigurationError) as excinfo:
        to_engine_config(PalimpsestConfig(LLM_PROVIDER="azure_openai", AZURE_OPENAI_API_KEY="k"))
    assert "AZURE_OPENAI_DEPLOYMENT_NAME" in str(excinfo.value)


def test_engine_config_applies_overrides():
    settings = PalimpsestConfig(OPENAI_API_KEY="sk-test", PALIMPSEST_MAX_ATTEMPTS=5)
    config = to_engine_config(
        settings, model="gpt-4o", target_language="es", max_concurrency=8, debug=True
    )
    assert config.provider.provider == "openai"
    assert config.provider.api_key == "sk-test"
    assert config.provider.model == "gpt-4o"
    assert config.provider.debug
    assert config.target_language == "es"
    assert config.max_concurrency == 8
    assert config.max_attempts == 5


def test_engine_config_defaults_model():
    config = to_engine_config(PalimpsestConfig(OPENAI_API_KEY="sk-test"))
    assert config.provider.model == "gpt-4o-mini"
    assert to_engine_config(PalimpsestConfig(), provider="echo").provider.model is None


def test_azure_uses_deployment_name_as_model():
    settings = PalimpsestConfig(
        LLM_PROVIDER="azure_openai",
        AZURE_OPENAI_API_KEY="k",
        AZURE_OPENAI_ENDPOINT="https://example.openai.azure.com",
        AZURE_OPENAI_API_VERSION="2024-06-01",
        AZURE_OPENAI_DEPLOYMENT_NAME="translator",
    )
    config = to_engine_config(settings)
    assert config.provider.provider == "azure_openai"
    assert config.provider.model == "translator"
    assert config.provider.base_url == "https://example.openai.azure.com"
    assert config.provider.api_version == "2024-06-01"


def test_invalid_concurrency_override_is_a_configuration_error():
    with pytest.raises(TranslationProviderConfigurationError):
        to_engine_config(PalimpsestConfig(), provider="echo", max_concurrency=11)
