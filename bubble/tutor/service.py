"""
Tutoring operations.

Each operation builds a prompt (plus an optional schema), runs it through
GeminiClient and turns the structured response into domain objects.
"""

import base64
import json
import logging
import random
from typing import List, Optional, Sequence, Tuple

from google.genai import types

from ..core.dispatch import BatchTask, process_remaining, ramp_difficulty, rotate_topics, solve_all
from ..core.errors import BubbleError, ValidationError
from ..sdk.gemini_client import GeminiClient, PartLike
from ..storage.models import RequestType
from . import schemas
from .models import (
    AppMode,
    ConceptExample,
    ConceptExplanation,
    ConceptSettings,
    DrillQuestion,
    DrillSettings,
    ExamPaper,
    ExamQuestion,
    ExamSection,
    ExamSettings,
    MathSolution,
    MathStep,
    UserInput,
)

logger = logging.getLogger(__name__)

HINT_TIMEOUT_MS = 20000
BREAKDOWN_TIMEOUT_MS = 25000
MARKSCHEME_TIMEOUT_MS = 30000
CONTEXT_CHAR_LIMIT = 1000

LATEX_RULE = "Wrap EVERY number and variable in LaTeX delimiters: write $x = 5$, never x = 5."

SOLVER_PROMPT = f"""
You are an expert IB Math tutor.
Formatting:
1. {LATEX_RULE}
2. Split the solution into short, logical steps.
3. Use standard Markdown only, no custom HTML tags.
Visuals:
4. For geometry, vector or trigonometry problems include a 'geometryConfig' in about half of the cases.
5. For functions include 'graphFunctions' (e.g. ["x^2", "Math.sin(x)"]) when a graph helps.
"""

MARKSCHEME_PROMPT = """
You are an IB Math examiner. Write the markscheme for the problem below.
Output a single Markdown table with columns | Step | Working | Explanation | Marks |.
Use IB codes M1 (method), A1 (accuracy), R1 (reasoning), AG (answer given).
No text outside the table. LaTeX ($...$) for all math.

Problem: {question}
Reference solution: {solution}
"""


def input_part(user_input: UserInput, label: str = "Context") -> types.Part:
    """Inline bytes for images and PDFs, labelled text otherwise."""
    if user_input.is_binary:
        return types.Part.from_bytes(
            data=base64.b64decode(user_input.content),
            mime_type=user_input.mime_type,
        )
    return types.Part.from_text(text=f"{label}: {user_input.content}")


class TutorService:
    """IB Math tutoring operations over a GeminiClient.

    Args:
        client: Guarded Gemini client
        rng: Random source deciding whether a drill question is visual
    """

    def __init__(self, client: GeminiClient, rng: Optional[random.Random] = None):
        self.client = client
        self.rng = rng or random.Random()

    # --- Solver ---

    async def analyze_math_input(self, user_input: UserInput) -> MathSolution:
        if user_input.is_binary:
            parts: List[PartLike] = [
                input_part(user_input),
                f"{SOLVER_PROMPT}\nTranscribe the exercise in this image exactly, using LaTeX, then solve it step by step.",
            ]
        else:
            parts = [f'{SOLVER_PROMPT}\nSolve this problem: "{user_input.content}"']

        data = await self.client.generate_json(parts, AppMode.SOLVER.value, schemas.MATH_SOLUTION)
        return schemas.parse_response(data, "SOLUTION", MathSolution.from_dict)

    async def solve_problems(self, inputs: Sequence[UserInput]) -> Tuple[List[Optional[MathSolution]], BatchTask]:
        """Solve the first upload now, the rest in the background, in order."""
        return await solve_all(inputs, self.analyze_math_input)

    async def get_markscheme(self, question: str, solution: str) -> str:
        """Markdown markscheme table, or "" when generation fails."""
        prompt = MARKSCHEME_PROMPT.format(question=question, solution=solution)
        try:
            return await self.client.generate(
                [prompt], AppMode.SOLVER.value, mime_type="text/plain", temperature=0.2,
                timeout_ms=MARKSCHEME_TIMEOUT_MS, retry=False,
            )
        except BubbleError as e:
            logger.warning("Markscheme generation failed: %s", e)
            return ""

    async def get_step_hint(self, step: MathStep, context: str) -> str:
        prompt = f"Give a short hint for this step: {step.title}\nStep detail: {step.explanation}\nProblem: {context[:CONTEXT_CHAR_LIMIT]}"
        try:
            return await self.client.generate(
                [prompt], AppMode.SOLVER.value, request_type=RequestType.CHAT,
                timeout_ms=HINT_TIMEOUT_MS, retry=False,
            )
        except BubbleError as e:
            logger.warning("Step hint failed: %s", e)
            return "Try breaking this step down."

    async def get_step_breakdown(self, step: MathStep, context: str) -> List[str]:
        prompt = f"Break this step into smaller sub-steps: {step.title}\nStep detail: {step.explanation}\nProblem: {context[:CONTEXT_CHAR_LIMIT]}"
        try:
            data = await self.client.generate_json(
                [prompt], AppMode.SOLVER.value, schemas.STEP_BREAKDOWN,
                timeout_ms=BREAKDOWN_TIMEOUT_MS, retry=False,
            )
        except BubbleError as e:
            logger.warning("Step breakdown failed: %s", e)
            return []
        return [str(item) for item in data] if isinstance(data, list) else []

    # --- Drill ---

    async def generate_similar_problem(self, original_context: str) -> DrillQuestion:
        prompt = f"""
        Generate a practice question SIMILAR to the solved problem below, to reinforce the same method.
        Original: {original_context[:CONTEXT_CHAR_LIMIT]}...
        Change the numbers or functions but keep the concept identical.
        For vectors, trigonometry or geometry include a 'geometryConfig' only about half of the time.
        {LATEX_RULE}
        """
        data = await self.client.generate_json([prompt], AppMode.DRILL.value, schemas.DRILL_QUESTION, temperature=0.8)
        return schemas.parse_response(data, "DRILL", DrillQuestion.from_dict)

    async def generate_drill_question(
        self,
        settings: DrillSettings,
        inputs: Sequence[UserInput],
        question_number: int,
        difficulty: float,
        topic: Optional[str] = None,
    ) -> DrillQuestion:
        """One drill question at the given difficulty (1-10).

        Whether the question is visual is decided here rather than left to
        the model, which keeps visual and textual questions balanced.
        """
        parts: List[PartLike] = [input_part(i, "Context") for i in inputs]
        topic_to_use = topic or ", ".join(settings.topics) or "General Math"
        force_visual = self.rng.random() > 0.5
        visual_rule = (
            "This question MUST have a visual (graphFunctions or geometryConfig)."
            if force_visual
            else "This question MUST be purely algebraic: no geometryConfig and no graphFunctions."
        )
        parts.append(f"""
        Generate drill question #{question_number}.
        Difficulty {difficulty}/10. Topic: {topic_to_use}.
        Calculator: {settings.calculator.value}. Paper difficulty: {settings.difficulty.value}.
        {visual_rule}
        {LATEX_RULE}
        """)

        data = await self.client.generate_json(parts, AppMode.DRILL.value, schemas.DRILL_QUESTION, temperature=0.8)
        question = schemas.parse_response(
            data, "DRILL", lambda d: DrillQuestion.from_dict(d, number=question_number)
        )
        question.difficulty_level = difficulty
        return question

    async def generate_drill_batch(
        self,
        start_number: int,
        previous_difficulty: float,
        count: int,
        settings: DrillSettings,
        inputs: Sequence[UserInput],
    ) -> List[DrillQuestion]:
        """``count`` questions with rising difficulty and rotating topics.

        Questions are generated one at a time; failed questions are dropped
        so one bad item never sinks the batch.
        """
        numbers = list(range(start_number, start_number + count))
        plan = list(zip(
            numbers,
            rotate_topics(settings.topics, start_number, count),
            ramp_difficulty(previous_difficulty, count),
        ))

        async def worker(item: Tuple[int, str, float]) -> DrillQuestion:
            number, topic, difficulty = item
            return await self.generate_drill_question(settings, inputs, number, difficulty, topic)

        task = process_remaining(0, plan, worker)
        results = await task.wait()
        return [q for q in results if q is not None]

    async def generate_drill_solution(self, question: DrillQuestion) -> List[MathStep]:
        prompt = f"Solve this drill question step by step: {question.question_text}\n{LATEX_RULE}"
        data = await self.client.generate_json([prompt], AppMode.DRILL.value, schemas.DRILL_SOLUTION, temperature=0.5)
        if not isinstance(data, dict) or not isinstance(data.get("steps"), list):
            raise ValidationError("Validation Failed: solution has no steps")
        return schemas.build_model(lambda d: [MathStep.from_dict(s) for s in d["steps"]], data)

    # --- Exam ---

    async def generate_exam(self, inputs: Sequence[UserInput], settings: ExamSettings) -> ExamPaper:
        """Draft a paper, then review each question; a failed review keeps the draft."""
        parts: List[PartLike] = [input_part(i, "Source Material") for i in inputs]
        parts.append(f"""
        Create an IB Math exam paper.
        Difficulty {settings.difficulty.value}, duration {settings.duration_minutes} min,
        topics {", ".join(settings.topics) or "General"}, calculator {settings.calculator.value}.
        Vectors, geometry and trigonometry: half the questions include a 'geometryConfig', half are text only.
        Functions: half include 'graphFunctions', half are analytical only.
        {LATEX_RULE}
        """)

        data = await self.client.generate_json(parts, AppMode.EXAM.value, schemas.EXAM_PAPER, temperature=0.7)
        draft = schemas.parse_response(data, "EXAM", ExamPaper.from_dict)

        refined_sections = []
        for section in draft.sections:
            questions = []
            for index, question in enumerate(section.questions):
                try:
                    questions.append(await self.review_question(question))
                except BubbleError as e:
                    logger.error("Question %d refinement failed: %s", index, e)
                    questions.append(question)
            refined_sections.append(ExamSection(title=section.title, questions=questions))

        draft.sections = refined_sections
        return draft

    async def review_question(self, question: ExamQuestion) -> ExamQuestion:
        payload = {
            "id": question.id,
            "number": question.number,
            "marks": question.marks,
            "questionText": question.question_text,
            "steps": question.steps,
            "markscheme": question.markscheme,
            "shortAnswer": question.short_answer,
            "hint": question.hint,
            "calculatorAllowed": question.calculator_allowed,
            "graphFunctions": question.graph_functions,
        }
        prompt = (
            "Review this exam question for correct logic and LaTeX syntax. "
            "Keep valid 'graphFunctions' or 'geometryConfig' where a visual is needed. "
            f"INPUT: {json.dumps(payload)}"
        )
        data = await self.client.generate_json([prompt], AppMode.EXAM.value, schemas.EXAM_QUESTION, temperature=0.3)
        return schemas.parse_response(data, "EXAM_QUESTION", ExamQuestion.from_dict)

    # --- Concept ---

    async def generate_concept_explanation(
        self, inputs: Sequence[UserInput], settings: ConceptSettings
    ) -> ConceptExplanation:
        parts: List[PartLike] = [input_part(i, "User Query/Context") for i in inputs]
        parts.append(f"""
        Act as an expert IB Math tutor and explain the concept "{settings.topic}".
        Level: {settings.level.value}. Depth: {settings.depth.value}.
        Be methodical and concise; no flowery metaphors.
        Structure: a short introduction, conceptBlocks walking through the theory,
        coreFormulas, and exactly 3 examples (BASIC, EXAM, HARD) with solution steps.
        At least one example should carry a graph or geometryConfig.
        {LATEX_RULE}
        """)
        data = await self.client.generate_json(parts, AppMode.CONCEPT.value, schemas.CONCEPT_EXPLANATION, temperature=0.4)
        return schemas.parse_response(data, "CONCEPT", ConceptExplanation.from_dict)

    async def breakdown_concept_block(self, block_content: str, topic: str) -> str:
        prompt = f"""
        Break this concept block into simpler, atomic points explaining the why and the how.
        Topic: {topic}
        Content: "{block_content}"
        Bulleted list, LaTeX for math, concise.
        """
        try:
            text = await self.client.generate(
                [prompt], AppMode.CONCEPT.value, mime_type="text/plain", temperature=0.5, retry=False,
            )
        except BubbleError as e:
            logger.warning("Concept breakdown failed: %s", e)
            return "Could not generate breakdown."
        return text or "Breakdown unavailable."

    async def reload_concept_examples(self, current: ConceptExplanation) -> List[ConceptExample]:
        previous = " | ".join(e.question for e in current.examples)
        prompt = f"""
        Generate 3 NEW IB Math examples for "{current.topic_title}": one BASIC, one EXAM, one HARD.
        Do not repeat these previous questions: {previous}
        Include graphFunctions or geometryConfig where they help.
        """
        data = await self.client.generate_json([prompt], AppMode.CONCEPT.value, schemas.EXAMPLE_RELOAD, temperature=0.7)
        if not isinstance(data, list) or not data:
            raise ValidationError("Validation Failed: Empty Example Array")
        return schemas.build_model(lambda d: [ConceptExample.from_dict(e) for e in d], data)
