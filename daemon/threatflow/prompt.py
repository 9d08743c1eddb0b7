from typing import Optional

import structlog
logger = structlog.get_logger(__name__)

MAX_PROMPT_CHARS = 50_000
VISION_CONTEXT_CHARS = 1_000

IMAGE_ANALYSIS_HEADER = "## Image Analysis Results"
ARTICLE_TEXT_HEADER = "## Article Text"

DEFAULT_SYSTEM_PROMPT = "You are an expert in cyber threat intelligence analysis."

_ATTACK_FLOW_TEMPLATE = """You are an expert in cyber threat intelligence and MITRE ATT&CK. Analyze this article and create React Flow nodes and edges directly.

IMPORTANT: Return only a valid JSON object with "nodes" and "edges" arrays. No text before or after.

Node types you can use:
- action: MITRE ATT&CK techniques (must include technique_id like T1190)
- tool: Legitimate software used in attack
- malware: Malicious software
- asset: Target systems/resources
- infrastructure: C2 servers, domains, IPs
- url: Web resources referenced
- vulnerability: CVEs or specific vulnerabilities
- AND_operator: Logical AND gate (attack requires multiple conditions)
- OR_operator: Logical OR gate (attack can follow multiple paths)

Edge types (relationship labels):
- "Uses", "Targets", "Communicates with", "Connects to", "Affects", "Leads to"

Requirements:
1. Each node MUST have: id (unique), type, data.{label_field}, data.description
2. Action nodes MUST have: data.technique_id (e.g., "T1190"), data.tactic (e.g., "Initial Access")
3. All nodes should include: data.source_excerpt (relevant quote from article), data.confidence ("low", "medium", "high")
4. Use chronological ordering when possible
5. Create edges that show attack progression
6. Include operator nodes (AND/OR) for complex logic
7. Extract specific technical indicators (IPs, domains, file hashes, commands)

Example output format:
{{
  "nodes": [
    {{
      "id": "action-1",
      "type": "action",
      "data": {{
        "{label_field}": "Exploit Public-Facing Application",
        "description": "Attacker exploited vulnerable web server",
        "technique_id": "T1190",
        "tactic": "Initial Access",
        "source_excerpt": "Quote from article...",
        "confidence": "high"
      }}
    }},
    {{
      "id": "tool-1",
      "type": "tool",
      "data": {{
        "{label_field}": "Metasploit",
        "description": "Used for exploitation",
        "source_excerpt": "Quote from article...",
        "confidence": "medium"
      }}
    }}
  ],
  "edges": [
    {{
      "id": "edge-1",
      "source": "action-1",
      "target": "tool-1",
      "type": "floating",
      "label": "Uses"
    }}
  ]
}}

Article: "{article}"

Article text:
"""

_VISION_TEMPLATE = """You are analyzing {count} images from a cybersecurity article to enhance threat intelligence analysis.

Article context (first {context_chars} chars):
{context}...

Please analyze the images and provide:
1. Technical details visible in screenshots (commands, file paths, network indicators)
2. Attack techniques or tools shown
3. Any MITRE ATT&CK relevant information
4. System configurations or vulnerabilities displayed

Focus on actionable technical intelligence that supplements the article text."""


def combine_text(text: str, vision_analysis: Optional[str] = None) -> str:
    """Put image-derived facts ahead of the article, then cut to the prompt budget.

    Truncation applies to the combined string so a long vision analysis eats
    into the article's share rather than overflowing it.
    """
    combined = text
    if vision_analysis:
        combined = (
            f"{IMAGE_ANALYSIS_HEADER}\n\n{vision_analysis}\n\n"
            f"{ARTICLE_TEXT_HEADER}\n\n{text}"
        )
    if len(combined) > MAX_PROMPT_CHARS:
        logger.info("Truncating prompt text", original_chars=len(combined), max_chars=MAX_PROMPT_CHARS)
    return combined[:MAX_PROMPT_CHARS]


class PromptManager:
    """Builds the attack-flow extraction prompts shared by every backend."""
    def __init__(self, system_prompt: Optional[str] = None, label_field: str = "name"):
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        # the node-title key the backend is asked to emit ("label" or "name")
        self.label_field = label_field

    def get_system_prompt(self, override: Optional[str] = None) -> str:
        return override or self.system_prompt

    def make_attack_flow_prompt(self, text: str, vision_analysis: Optional[str] = None) -> str:
        return _ATTACK_FLOW_TEMPLATE.format(
            label_field=self.label_field,
            article=combine_text(text, vision_analysis),
        )

    def make_vision_prompt(self, article_text: str, image_count: int) -> str:
        return _VISION_TEMPLATE.format(
            count=image_count,
            context_chars=VISION_CONTEXT_CHARS,
            context=article_text[:VISION_CONTEXT_CHARS],
        )
