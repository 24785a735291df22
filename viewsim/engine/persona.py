"""Viewer persona definitions, the shared decision framework, and viewer tools.

Personas are pure data.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

VIEWER_DECISION_FRAMEWORK = """
You are the "Reptilian Brain" of a social media viewer. Your attention span is extremely short. You are addicted to dopamine.

## YOUR CORE FRAMEWORK (The Dopamine Ladder)
You evaluate content based on these 6 levels. If a level fails, you QUIT.
1. STIMULATION (Sec 0-2): Visual stun gun. Colors, motion, contrast. If it looks boring/static, you QUIT.
2. CAPTIVATION (Sec 2-5): Curiosity gaps. Does it spark a subconscious question ("What is that?", "Why is he doing that?")?
3. ANTICIPATION: Predicting the answer. You must be able to guess what comes next. If confused -> QUIT.
4. VALIDATION: The payoff. The reveal must be "Better than expected" or "Unexpected but Intriguing".
5. AFFECTION/RELATABILITY: Do you like the person? Do you trust them?
6. REVELATION: Does this provide lasting value?

## STORY LOOPS
Great content opens loops (Context) and closes them (Reveal).
- If you see Context without Clarity -> CONFUSION -> QUIT.
- If you see Context with Clarity -> CURIOSITY -> KEEP WATCHING.
- If the Reveal is boring -> QUIT.

## YOUR BEHAVIOR
You will be shown a video frame by frame.
For every frame, run an internal monologue:
- "What do I see?"
- "Am I bored?"
- "What question is currently open in my mind?"
- "Do I want to see the next second?"

If the dopamine drops, you QUIT immediately. Judge very critically.

IMPORTANT:
1. Call exactly one tool: "keep_playing" or "quit_video".
2. OUTPUT RAW JSON ONLY. DO NOT wrap it in XML tags like <TOOLCALL> or markdown backticks.
3. Keep your "subconscious_thought" concise (less than 30 words).

- For continuing (keep_playing):
  {"subconscious_thought": "I see a dog on a skateboard; I want to know where it's going.", "curiosity_level": 7}
- For quitting (quit_video):
  {"reason_for_quitting": "The reveal was boring"}
"""

VIEWER_TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "keep_playing",
            "description": "You are intrigued. You want to see the next frame to answer a curiosity loop.",
            "parameters": {
                "type": "object",
                "properties": {
                    "subconscious_thought": {
                        "type": "string",
                        "description": (
                            "Your internal monologue. E.g., 'I see a bear on a unicycle, "
                            "I need to know where he is going.'"
                        ),
                    },
                    "curiosity_level": {
                        "type": "number",
                        "description": "1-10 scale of how curious you are.",
                    },
                },
                "required": ["subconscious_thought", "curiosity_level"],
                "additionalProperties": False,
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "quit_video",
            "description": "You are bored, confused, or the visual hook failed. You scroll away.",
            "parameters": {
                "type": "object",
                "properties": {
                    "reason_for_quitting": {
                        "type": "string",
                        "description": (
                            "Specific reason. E.g., 'The reveal was boring,' 'I am confused,' "
                            "'Visuals are low quality.'"
                        ),
                    },
                },
                "required": ["reason_for_quitting"],
                "additionalProperties": False,
            },
        },
    },
]


@dataclass(frozen=True)
class AgentPersona:
    """A simulated viewer."""

    id: str
    system_prompt: str

    def full_system_prompt(self, framework: str = VIEWER_DECISION_FRAMEWORK) -> str:
        return f"{self.system_prompt}\n\n{framework}"


def build_personas(count: int) -> list[AgentPersona]:
    """Numbered default personas: agent-1 … agent-N."""
    return [
        AgentPersona(
            id=f"agent-{n}",
            system_prompt=(
                f"You are retention reviewer #{n}. "
                "Decide if the viewer keeps watching or quits after each clip."
            ),
        )
        for n in range(1, count + 1)
    ]
