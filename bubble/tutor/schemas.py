"""
Structured-output schemas and response validation.

Schemas are plain dicts in the shape google-genai accepts for
``response_schema``.
"""

import json
from typing import Any, Callable, Dict, TypeVar

from ..core.errors import ValidationError

T = TypeVar("T")

STRING = {"type": "STRING"}
NUMBER = {"type": "NUMBER"}
INTEGER = {"type": "INTEGER"}
BOOLEAN = {"type": "BOOLEAN"}
STRING_LIST = {"type": "ARRAY", "items": STRING}

MATH_STEP = {
    "type": "OBJECT",
    "properties": {
        "section": STRING,
        "title": STRING,
        "explanation": STRING,
        "keyEquation": STRING,
    },
    "required": ["section", "title", "explanation", "keyEquation"],
}

GEOMETRY_CONFIG = {
    "type": "OBJECT",
    "properties": {
        "xmin": NUMBER,
        "xmax": NUMBER,
        "ymin": NUMBER,
        "ymax": NUMBER,
        "objects": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "type": {
                        "type": "STRING",
                        "enum": ["point", "line", "segment", "vector", "circle", "angle", "polygon"],
                    },
                    "id": STRING,
                    "label": STRING,
                    "coords": {"type": "ARRAY", "items": NUMBER},
                    "parents": STRING_LIST,
                    "radius": NUMBER,
                },
                "required": ["type", "id"],
            },
        },
    },
    "required": ["xmin", "xmax", "ymin", "ymax", "objects"],
}

MATH_SOLUTION = {
    "type": "OBJECT",
    "properties": {
        "exerciseStatement": {"type": "STRING", "description": "The full text of the exercise. Use LaTeX ($...$)."},
        "problemSummary": {"type": "STRING", "description": "A concise summary using LaTeX for all math."},
        "steps": {"type": "ARRAY", "items": MATH_STEP},
        "finalAnswer": {"type": "STRING", "description": "Final result. Use Markdown list format. Use LaTeX."},
        "graphFunctions": {
            "type": "ARRAY",
            "items": STRING,
            "description": "Graphable functions in JS syntax (e.g. 'x^2', 'Math.sin(x)'). Empty if not relevant.",
        },
        "geometryConfig": GEOMETRY_CONFIG,
    },
    "required": ["exerciseStatement", "problemSummary", "steps", "finalAnswer"],
}

EXAM_QUESTION = {
    "type": "OBJECT",
    "properties": {
        "id": STRING,
        "number": STRING,
        "marks": INTEGER,
        "questionText": STRING,
        "steps": STRING_LIST,
        "markscheme": STRING,
        "shortAnswer": STRING,
        "hint": STRING,
        "calculatorAllowed": BOOLEAN,
        "graphFunctions": STRING_LIST,
        "geometryConfig": GEOMETRY_CONFIG,
    },
    "required": ["id", "number", "marks", "questionText", "markscheme", "shortAnswer", "calculatorAllowed", "steps"],
}

EXAM_PAPER = {
    "type": "OBJECT",
    "properties": {
        "title": STRING,
        "totalMarks": INTEGER,
        "duration": INTEGER,
        "sections": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "title": STRING,
                    "questions": {"type": "ARRAY", "items": EXAM_QUESTION},
                },
                "required": ["title", "questions"],
            },
        },
    },
    "required": ["title", "totalMarks", "duration", "sections"],
}

DRILL_QUESTION = {
    "type": "OBJECT",
    "properties": {
        "topic": STRING,
        "difficultyLevel": NUMBER,
        "questionText": STRING,
        "shortAnswer": STRING,
        "hint": STRING,
        "calculatorAllowed": BOOLEAN,
        "graphFunctions": STRING_LIST,
        "geometryConfig": GEOMETRY_CONFIG,
    },
    "required": ["topic", "difficultyLevel", "questionText", "shortAnswer", "hint", "calculatorAllowed"],
}

DRILL_SOLUTION = {
    "type": "OBJECT",
    "properties": {
        "steps": {
            "type": "ARRAY",
            "items": MATH_STEP,
            "description": "Full step-by-step solution.",
        },
    },
    "required": ["steps"],
}

CONCEPT_EXAMPLE = {
    "type": "OBJECT",
    "properties": {
        "difficulty": {"type": "STRING", "enum": ["BASIC", "EXAM", "HARD"]},
        "question": STRING,
        "hint": STRING,
        "solutionSteps": {"type": "ARRAY", "items": MATH_STEP},
        "finalAnswer": STRING,
        "explanation": STRING,
        "graphFunctions": STRING_LIST,
        "geometryConfig": GEOMETRY_CONFIG,
    },
    "required": ["difficulty", "question", "hint", "solutionSteps", "finalAnswer", "explanation"],
}

CONCEPT_EXPLANATION = {
    "type": "OBJECT",
    "properties": {
        "topicTitle": STRING,
        "introduction": STRING,
        "conceptBlocks": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {"title": STRING, "content": STRING, "keyEquation": STRING},
                "required": ["title", "content"],
            },
        },
        "coreFormulas": STRING_LIST,
        "examples": {"type": "ARRAY", "items": CONCEPT_EXAMPLE},
    },
    "required": ["topicTitle", "introduction", "conceptBlocks", "examples"],
}

EXAMPLE_RELOAD = {"type": "ARRAY", "items": CONCEPT_EXAMPLE}

STEP_BREAKDOWN = STRING_LIST

RENDER_ERROR_MARKERS = ("[Math Processing Error]", "katex-error")

MALFORMED_ERRORS = (KeyError, TypeError, ValueError, AttributeError)

REQUIRED_FIELDS: Dict[str, tuple] = {
    "SOLUTION": ("exerciseStatement", "problemSummary", "steps", "finalAnswer"),
    "DRILL": ("questionText",),
    "EXAM": ("title", "totalMarks", "duration", "sections"),
    "EXAM_QUESTION": ("questionText", "marks"),
    "CONCEPT": ("topicTitle", "introduction", "conceptBlocks", "examples"),
}

QUESTION_KINDS = ("DRILL", "EXAM_QUESTION")


def validate_response(data: Any, kind: str) -> None:
    """Reject structured output that would render badly.

    Args:
        data: Parsed JSON response
        kind: SOLUTION, DRILL, EXAM, EXAM_QUESTION or CONCEPT

    Raises:
        ValidationError: On LaTeX render errors, missing fields, or an
            empty question
    """
    serialized = json.dumps(data)
    if any(marker in serialized for marker in RENDER_ERROR_MARKERS):
        raise ValidationError("Validation Failed: Detected LaTeX rendering error in output.")

    if not isinstance(data, dict):
        raise ValidationError(f"Validation Failed: expected an object for {kind}")

    missing = [name for name in REQUIRED_FIELDS.get(kind, ()) if name not in data]
    if missing:
        raise ValidationError(f"Validation Failed: missing fields {missing} in {kind}")

    if kind in QUESTION_KINDS:
        text = data.get("questionText") or ""
        if len(text) < 5:
            raise ValidationError("Validation Failed: Empty Question Text")


def build_model(build: Callable[[Any], T], data: Any) -> T:
    """Run ``build`` over parsed output; shape errors become ValidationError."""
    try:
        return build(data)
    except MALFORMED_ERRORS as e:
        raise ValidationError(f"Validation Failed: malformed response ({type(e).__name__}: {e})") from e


def parse_response(data: Any, kind: str, build: Callable[[Any], T]) -> T:
    validate_response(data, kind)
    return build_model(build, data)
