"""
Domain data models.

Flat transfer objects built from the structured JSON the model returns.
Wire field names are camelCase; attributes are snake_case.
"""

import base64
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class InputType(Enum):
    IMAGE = "image"
    TEXT = "text"
    PDF = "pdf"


class AppMode(Enum):
    SOLVER = "SOLVER"
    EXAM = "EXAM"
    DRILL = "DRILL"
    CONCEPT = "CONCEPT"


class ExamDifficulty(Enum):
    STANDARD = "STANDARD"
    HARD = "HARD"
    HELL = "HELL"


class CalculatorOption(Enum):
    YES = "YES"
    NO = "NO"
    MIXED = "MIXED"


class IBLevel(Enum):
    SL = "SL"
    HL = "HL"


class ConceptDepth(Enum):
    SUMMARY = "SUMMARY"
    DETAILED = "DETAILED"


@dataclass(frozen=True)
class UserInput:
    """An uploaded problem. ``content`` is base64 for image/pdf, raw text otherwise."""
    type: InputType
    content: str
    mime_type: str = "text/plain"
    file_name: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_text(cls, text: str) -> "UserInput":
        return cls(type=InputType.TEXT, content=text)

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str, file_name: Optional[str] = None) -> "UserInput":
        input_type = InputType.PDF if mime_type == "application/pdf" else InputType.IMAGE
        return cls(
            type=input_type,
            content=base64.b64encode(data).decode("ascii"),
            mime_type=mime_type,
            file_name=file_name,
        )

    @property
    def is_binary(self) -> bool:
        return self.type in (InputType.IMAGE, InputType.PDF)


def _list_of_str(value: Any) -> List[str]:
    return [str(v) for v in value] if isinstance(value, list) else []


@dataclass
class MathStep:
    section: str
    title: str
    explanation: str
    key_equation: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MathStep":
        return cls(
            section=data.get("section", ""),
            title=data.get("title", ""),
            explanation=data.get("explanation", ""),
            key_equation=data.get("keyEquation", ""),
        )


@dataclass
class MathSolution:
    exercise_statement: str
    problem_summary: str
    steps: List[MathStep]
    final_answer: str
    markscheme: Optional[str] = None
    graph_functions: List[str] = field(default_factory=list)
    geometry_config: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MathSolution":
        return cls(
            exercise_statement=data["exerciseStatement"],
            problem_summary=data["problemSummary"],
            steps=[MathStep.from_dict(s) for s in data.get("steps", [])],
            final_answer=data["finalAnswer"],
            markscheme=data.get("markscheme"),
            graph_functions=_list_of_str(data.get("graphFunctions")),
            geometry_config=data.get("geometryConfig"),
        )


@dataclass(frozen=True)
class DrillSettings:
    difficulty: ExamDifficulty = ExamDifficulty.STANDARD
    topics: List[str] = field(default_factory=list)
    calculator: CalculatorOption = CalculatorOption.MIXED


@dataclass
class DrillQuestion:
    number: int
    topic: str
    difficulty_level: float
    question_text: str
    short_answer: str
    hint: str
    calculator_allowed: bool
    steps: List[MathStep] = field(default_factory=list)
    graph_functions: List[str] = field(default_factory=list)
    geometry_config: Optional[Dict[str, Any]] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def from_dict(cls, data: Dict[str, Any], number: int = 1) -> "DrillQuestion":
        return cls(
            number=number,
            topic=data.get("topic", ""),
            difficulty_level=float(data.get("difficultyLevel", 1)),
            question_text=data.get("questionText", ""),
            short_answer=data.get("shortAnswer", ""),
            hint=data.get("hint", ""),
            calculator_allowed=bool(data.get("calculatorAllowed", False)),
            graph_functions=_list_of_str(data.get("graphFunctions")),
            geometry_config=data.get("geometryConfig"),
        )


@dataclass(frozen=True)
class ExamSettings:
    duration_minutes: int = 60
    difficulty: ExamDifficulty = ExamDifficulty.STANDARD
    topics: List[str] = field(default_factory=list)
    calculator: CalculatorOption = CalculatorOption.MIXED


@dataclass
class ExamQuestion:
    id: str
    number: str
    marks: int
    question_text: str
    markscheme: str
    short_answer: str
    calculator_allowed: bool
    steps: List[str] = field(default_factory=list)
    hint: Optional[str] = None
    graph_functions: List[str] = field(default_factory=list)
    geometry_config: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExamQuestion":
        return cls(
            id=str(data.get("id", "")),
            number=str(data.get("number", "")),
            marks=int(data.get("marks", 0)),
            question_text=data.get("questionText", ""),
            markscheme=data.get("markscheme", ""),
            short_answer=data.get("shortAnswer", ""),
            calculator_allowed=bool(data.get("calculatorAllowed", False)),
            steps=_list_of_str(data.get("steps")),
            hint=data.get("hint"),
            graph_functions=_list_of_str(data.get("graphFunctions")),
            geometry_config=data.get("geometryConfig"),
        )


@dataclass
class ExamSection:
    title: str
    questions: List[ExamQuestion]


@dataclass
class ExamPaper:
    title: str
    total_marks: int
    duration: int
    sections: List[ExamSection]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExamPaper":
        return cls(
            title=data["title"],
            total_marks=int(data["totalMarks"]),
            duration=int(data["duration"]),
            sections=[
                ExamSection(
                    title=s.get("title", ""),
                    questions=[ExamQuestion.from_dict(q) for q in s.get("questions", [])],
                )
                for s in data.get("sections", [])
            ],
        )


@dataclass(frozen=True)
class ConceptSettings:
    topic: str
    level: IBLevel = IBLevel.SL
    depth: ConceptDepth = ConceptDepth.SUMMARY


@dataclass
class ConceptBlock:
    title: str
    content: str
    key_equation: Optional[str] = None


@dataclass
class ConceptExample:
    difficulty: str
    question: str
    hint: str
    solution_steps: List[MathStep]
    final_answer: str
    explanation: str
    graph_functions: List[str] = field(default_factory=list)
    geometry_config: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConceptExample":
        return cls(
            difficulty=data.get("difficulty", "BASIC"),
            question=data.get("question", ""),
            hint=data.get("hint", ""),
            solution_steps=[MathStep.from_dict(s) for s in data.get("solutionSteps", [])],
            final_answer=data.get("finalAnswer", ""),
            explanation=data.get("explanation", ""),
            graph_functions=_list_of_str(data.get("graphFunctions")),
            geometry_config=data.get("geometryConfig"),
        )


@dataclass
class ConceptExplanation:
    topic_title: str
    introduction: str
    concept_blocks: List[ConceptBlock]
    examples: List[ConceptExample]
    core_formulas: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConceptExplanation":
        return cls(
            topic_title=data["topicTitle"],
            introduction=data["introduction"],
            concept_blocks=[
                ConceptBlock(
                    title=b.get("title", ""),
                    content=b.get("content", ""),
                    key_equation=b.get("keyEquation"),
                )
                for b in data.get("conceptBlocks", [])
            ],
            examples=[ConceptExample.from_dict(e) for e in data.get("examples", [])],
            core_formulas=_list_of_str(data.get("coreFormulas")),
        )
