import pytest
from threatflow.prompt import (
    ARTICLE_TEXT_HEADER, DEFAULT_SYSTEM_PROMPT, IMAGE_ANALYSIS_HEADER, MAX_PROMPT_CHARS,
    PromptManager, combine_text,
)

# Fixtures
@pytest.fixture
def default_manager():
    return PromptManager()

@pytest.fixture
def custom_manager():
    return PromptManager(system_prompt="Test System Prompt", label_field="label")


# Tests
def test_init_default_prompt(default_manager):
    assert default_manager.system_prompt == DEFAULT_SYSTEM_PROMPT
    assert default_manager.get_system_prompt() == "You are an expert in cyber threat intelligence analysis."

def test_init_custom_prompt(custom_manager):
    assert custom_manager.get_system_prompt() == "Test System Prompt"

def test_system_override_wins(custom_manager):
    assert custom_manager.get_system_prompt("Per-request persona") == "Per-request persona"

def test_combine_text_without_vision():
    assert combine_text("article body") == "article body"
    assert combine_text("article body", "") == "article body"

def test_combine_text_puts_vision_first():
    combined = combine_text("article body", "screenshot shows mimikatz")
    assert combined == (
        "## Image Analysis Results\n\nscreenshot shows mimikatz\n\n"
        "## Article Text\n\narticle body"
    )
    assert combined.index(IMAGE_ANALYSIS_HEADER) < combined.index("mimikatz")
    assert combined.index("mimikatz") < combined.index(ARTICLE_TEXT_HEADER) < combined.index("article body")

def test_truncation_applies_after_vision_prefix():
    article = "a" * MAX_PROMPT_CHARS
    combined = combine_text(article, "v" * 100)
    assert len(combined) == MAX_PROMPT_CHARS
    assert combined.startswith(IMAGE_ANALYSIS_HEADER)
    # the article loses the characters the vision prefix took
    assert combined.count("a") < MAX_PROMPT_CHARS

def test_short_text_is_not_padded():
    assert len(combine_text("x" * 10)) == 10

def test_attack_flow_prompt_embeds_article(default_manager):
    prompt = default_manager.make_attack_flow_prompt("APT29 used spearphishing", "image facts")
    assert 'Article: "## Image Analysis Results\n\nimage facts\n\n## Article Text\n\nAPT29 used spearphishing"' in prompt
    assert prompt.rstrip().endswith("Article text:")
    assert "AND_operator" in prompt and "OR_operator" in prompt
    assert "data.name, data.description" in prompt
    assert '"name": "Metasploit"' in prompt

def test_attack_flow_prompt_label_field(custom_manager):
    prompt = custom_manager.make_attack_flow_prompt("text")
    assert "data.label, data.description" in prompt
    assert '"label": "Exploit Public-Facing Application"' in prompt

def test_attack_flow_prompt_truncates_embedded_article(default_manager):
    prompt = default_manager.make_attack_flow_prompt("#" * (MAX_PROMPT_CHARS + 5000))
    assert "#" * MAX_PROMPT_CHARS + '"' in prompt
    assert "#" * (MAX_PROMPT_CHARS + 1) not in prompt

def test_article_braces_survive_formatting(default_manager):
    prompt = default_manager.make_attack_flow_prompt('payload {"cmd": "whoami"}')
    assert 'payload {"cmd": "whoami"}' in prompt

def test_vision_prompt(default_manager):
    prompt = default_manager.make_vision_prompt("c" * 3000, 3)
    assert prompt.startswith("You are analyzing 3 images from a cybersecurity article")
    assert "Article context (first 1000 chars):\n" + "c" * 1000 + "..." in prompt
    assert "c" * 1001 not in prompt
