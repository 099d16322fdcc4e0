"""LLM prompt templates for scene analysis.

Each provider gets a prompt tuned to how it follows instructions; the
JSON shape they ask for is identical.
"""
from typing import Optional

JSON_SYSTEM_INSTRUCTION = (
    "You are a helpful assistant that always responds with valid JSON. "
    "Never include any text outside the JSON object."
)

ANALYSIS_SCHEMA = """{
  "characters": [
    {
      "name": "Character Name",
      "description": "Brief physical description and role in this scene"
    }
  ],
  "setting": "Description of the location/setting",
  "timeOfDay": "morning/afternoon/evening/night or null if not specified",
  "weather": "Description of weather conditions or null if not mentioned",
  "mood": "Overall mood/atmosphere of the scene (e.g., tense, peaceful, melancholic)",
  "visualElements": ["Notable visual details that would be important for an image"],
  "keyActions": ["Main actions or events happening in this scene"]
}"""


def scene_analysis_prompt(scene_text: str, chapter_title: Optional[str] = None) -> str:
    """Generic prompt, used by local models.

    Args:
        scene_text: Scene text
        chapter_title: Title of the chapter the scene belongs to

    Returns:
        Formatted prompt string
    """
    chapter_context = f"Chapter: {chapter_title}\n\n" if chapter_title else ""

    return f"""{chapter_context}Analyze this scene from a book and extract the following information in JSON format:

Scene Text:
\"\"\"
{scene_text}
\"\"\"

Provide your analysis as a JSON object with this exact structure:
{ANALYSIS_SCHEMA}

IMPORTANT:
- Only include characters that are actually present and active in THIS scene
- Keep descriptions concise but specific
- Focus on visual details that would matter for image generation
- Return ONLY the JSON object, no additional text"""


def claude_scene_analysis_prompt(scene_text: str, chapter_title: Optional[str] = None) -> str:
    """Prompt phrased for Claude models."""
    chapter_context = (
        f'This scene is from the chapter: "{chapter_title}"\n\n' if chapter_title else ""
    )

    return f"""{chapter_context}Please analyze this scene from a book and extract structured information for visual representation.

Scene Text:
\"\"\"
{scene_text}
\"\"\"

Extract the following information and respond with a JSON object:

{{
  "characters": [
    {{
      "name": "Character's full name",
      "description": "Physical appearance, clothing, and key traits visible in this scene"
    }}
  ],
  "setting": "Detailed description of the location and environment",
  "timeOfDay": "morning/afternoon/evening/night (or null if not specified)",
  "weather": "Weather conditions (or null if not mentioned)",
  "mood": "Overall atmosphere (e.g., tense, joyful, mysterious, somber)",
  "visualElements": ["Important visual detail 1", "Important visual detail 2"],
  "keyActions": ["Main action or event 1", "Main action or event 2"]
}}

Important guidelines:
- Only include characters who are physically present in THIS specific scene
- Focus on visual details that would be important for creating an illustration
- Keep descriptions concise but specific
- Use null for timeOfDay and weather if not mentioned
- Return ONLY the JSON object"""


def chatgpt_scene_analysis_prompt(scene_text: str, chapter_title: Optional[str] = None) -> str:
    """Prompt phrased for OpenAI chat models running in JSON mode."""
    chapter_context = f'Chapter: "{chapter_title}"\n\n' if chapter_title else ""

    return f"""{chapter_context}Analyze this book scene and extract structured information for visual representation.

Scene Text:
\"\"\"
{scene_text}
\"\"\"

Return a JSON object with this exact structure:

{ANALYSIS_SCHEMA}

Guidelines:
- Only include characters physically present in this scene
- Focus on visual details for illustration
- Use null for timeOfDay/weather if not mentioned
- Keep descriptions concise
- Return only valid JSON"""
