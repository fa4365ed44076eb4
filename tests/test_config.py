from config import GPT4O, GPT5_MINI, MappingConfig, get_default_config, get_model_by_name


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("OPENAI_MODEL", "gpt-4o")
    monkeypatch.setenv("MAPPER_CHECKBOX_MODE", "Oracle")
    monkeypatch.setenv("MAPPER_MIN_CONFIDENCE", "0.8")
    monkeypatch.setenv("MAPPER_DEBUG", "true")

    config = get_default_config()
    assert config.model == GPT4O
    assert config.checkbox_mode == "oracle"
    assert config.min_confidence == 0.8
    assert config.debug_enabled


def test_invalid_environment_values_fall_back(monkeypatch):
    monkeypatch.setenv("MAPPER_CHECKBOX_MODE", "sometimes")
    monkeypatch.setenv("MAPPER_MIN_CONFIDENCE", "high")
    monkeypatch.delenv("MAPPER_DEBUG", raising=False)

    config = get_default_config()
    assert config.checkbox_mode == "template"
    assert config.min_confidence == 0.7
    assert not config.debug_enabled


def test_prompt_budget():
    config = MappingConfig(model=GPT5_MINI)
    assert config.available_input_tokens == 400_000 - 1_500 - 2_000
    assert config.prompt_char_budget == int(config.available_input_tokens * 2.5)
    assert get_model_by_name("unknown") == GPT5_MINI
