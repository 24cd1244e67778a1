from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Union, Literal, Annotated


class CamelModel(BaseModel):
    """Wire models use camelCase; Python code uses snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Exam definition (components laid out by the editor)
# =============================================================================

class Position(CamelModel):
    """Component rectangle on an A4 page, in millimetres."""
    page_index: Optional[int] = None
    top: float = 0
    left: float = 0
    width: float = 0
    height: float = 0


class BaseComponent(CamelModel):
    id: str
    position: Optional[Position] = None


class MCQOption(CamelModel):
    label: str  # A, B, C, D
    content: str = ""


class MultipleChoiceQuestion(BaseComponent):
    type: Literal["multiple-choice"] = "multiple-choice"
    question: str = ""
    options: List[MCQOption] = []
    answer: List[str] = []
    score: float = 0
    question_number: int = 0


class FillInBlankQuestion(BaseComponent):
    type: Literal["fill-in-blank"] = "fill-in-blank"
    content: str = ""
    answer: str = ""
    score: float = 0
    question_number: int = 0


class OpenQuestion(BaseComponent):
    type: Literal["open"] = "open"
    content: str = ""
    lines: int = 0
    answer: str = ""
    score: float = 0
    question_number: int = 0


class HeaderComponent(BaseComponent):
    type: Literal["default-header"] = "default-header"


class BlankComponent(BaseComponent):
    type: Literal["blank"] = "blank"
    lines: int = 0


class DividerComponent(BaseComponent):
    type: Literal["divider"] = "divider"


ExamComponent = Annotated[
    Union[
        MultipleChoiceQuestion,
        FillInBlankQuestion,
        OpenQuestion,
        HeaderComponent,
        BlankComponent,
        DividerComponent,
    ],
    Field(discriminator="type"),
]

QuestionComponent = Union[MultipleChoiceQuestion, FillInBlankQuestion, OpenQuestion]

OBJECTIVE_TYPES = ("multiple-choice",)
SUBJECTIVE_TYPES = ("open", "fill-in-blank")
QUESTION_TYPES = OBJECTIVE_TYPES + SUBJECTIVE_TYPES


class ExamData(CamelModel):
    """Whole exam paper as stored in Exam.exam_data."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str = ""
    title: str = ""
    description: str = ""
    duration: str = ""
    university: str = ""
    course: str = ""
    year: str = ""
    semester: str = ""
    exam_date: str = ""
    components: List[ExamComponent] = []

    def questions(self) -> List[QuestionComponent]:
        return [c for c in self.components if c.type in QUESTION_TYPES]

    def find(self, component_id: str) -> Optional[ExamComponent]:
        return next((c for c in self.components if c.id == component_id), None)


# =============================================================================
# Schedule result (grading pipeline state)
# =============================================================================

class Progress(str, Enum):
    CREATED = "CREATED"
    UPLOADED = "UPLOADED"
    MATCH_START = "MATCH_START"
    MATCH_DONE = "MATCH_DONE"
    OBJECTIVE_START = "OBJECTIVE_START"
    OBJECTIVE_DONE = "OBJECTIVE_DONE"
    SUBJECTIVE_START = "SUBJECTIVE_START"
    SUBJECTIVE_DONE = "SUBJECTIVE_DONE"
    RESULT_START = "RESULT_START"
    RESULT_DONE = "RESULT_DONE"


class StageError(CamelModel):
    stage: str
    message: str
    details: Optional[str] = None
    timestamp: str


class Paper(CamelModel):
    """One student's slice of the scanned PDF."""
    paper_id: str
    start_page: int
    end_page: int  # exclusive
    name: str = ""
    student_id: str = ""
    student_document_id: Optional[str] = ""
    header_img_url: str = ""
    question_image_map: Dict[str, str] = {}


class StudentRef(CamelModel):
    name: Optional[str] = ""
    student_id: str = ""
    document_id: Optional[str] = ""
    published_at: str = ""


class ObjectiveAnswer(CamelModel):
    question_id: str
    student_answer: List[str] = []
    llm_unknown: bool = False
    score: float = -1
    image_url: str = ""


class SubjectiveSuggestion(CamelModel):
    reasoning: str = ""
    score: float = -1
    ocr_result: str = ""
    suggestion: str = ""


class SubjectiveAnswer(CamelModel):
    question_id: str
    score: float = -1
    image_url: str = ""
    done: bool = False
    question_number: int = 0
    ai_suggestion: SubjectiveSuggestion = Field(default_factory=SubjectiveSuggestion)


class StudentPaper(CamelModel):
    student: StudentRef
    paper_id: str
    objective_questions: List[ObjectiveAnswer] = []
    subjective_questions: List[SubjectiveAnswer] = []
    total_score: float = 0


class MatchedPair(CamelModel):
    student_id: str
    paper_id: str
    header_img_url: str = ""


class UnmatchedPaper(CamelModel):
    paper_id: str
    header_img_url: str = ""


class Unmatched(CamelModel):
    student_ids: List[str] = []
    papers: List[UnmatchedPaper] = []


class MatchResult(CamelModel):
    done: bool = False
    matched: List[MatchedPair] = []
    unmatched: Unmatched = Field(default_factory=Unmatched)


class QuestionStatistics(CamelModel):
    question_id: str
    average: float
    highest: float
    lowest: float
    median: float
    standard_deviation: float
    correct: int = -1  # multiple-choice only
    incorrect: int = -1


class Statistics(CamelModel):
    average: float = -1
    highest: float = -1
    lowest: float = -1
    median: float = -1
    standard_deviation: float = -1
    questions: List[QuestionStatistics] = []


class ScheduleResult(CamelModel):
    progress: Progress = Progress.CREATED
    pdf_url: str = ""
    papers: List[Paper] = []
    student_papers: List[StudentPaper] = []
    match_result: MatchResult = Field(default_factory=MatchResult)
    statistics: Statistics = Field(default_factory=Statistics)
    error: Optional[StageError] = None


# =============================================================================
# Vision model structured outputs
# =============================================================================

class HeaderRecognition(BaseModel):
    """Structured output for exam header recognition."""
    reason: str = Field(..., description="Reason for the answer. Think step by step. Output this field first.")
    name: str = Field(..., description="Student name")
    studentId: str = Field(..., description="Student ID")


class MCQRecognition(BaseModel):
    """Structured output for multiple-choice answer recognition."""
    reason: str = Field(..., description="Reason for the answer. Think step by step. Output this field first.")
    answer: List[str] = Field(..., description='Answers, such as ["A"], ["B", "C"]')


class SubjectiveGrading(BaseModel):
    """Structured output for subjective grading suggestions."""
    reasoning: str = Field(..., description="Your reasoning process, this field must be output first, think step by step, use English")
    ocrResult: str = Field(..., description='The handwritten answers recognized by OCR, if OCR recognition fails, please output "OCR Failed"')
    suggestion: str = Field(..., description="Scoring suggestions for the teacher, concise and clear, use English")
    score: float = Field(..., description="Score for the teacher, within [0, question_score]")


# =============================================================================
# Request / response bodies
# =============================================================================

class AskSubjectiveRequest(CamelModel):
    question: str
    answer: str = ""
    score: float
    image_url: str


class PipelineStartResponse(CamelModel):
    success: bool
    message: str
    document_id: str


class RegisterUserRequest(BaseModel):
    username: str
    email: Optional[str] = None


class StudentCreate(CamelModel):
    name: str
    student_id: str
    teacher: Optional[str] = None  # teacher documentId


class ClassCreate(CamelModel):
    name: str
    students: List[str] = []  # student documentIds
    teacher: Optional[str] = None


class ClassUpdate(CamelModel):
    name: Optional[str] = None
    students: Optional[List[str]] = None


class ExamCreate(CamelModel):
    project_name: str
    user: Optional[str] = None
    exam_data: Optional[ExamData] = None


class ExamUpdate(CamelModel):
    project_name: Optional[str] = None
    exam_data: Optional[ExamData] = None


class ScheduleCreate(CamelModel):
    name: str
    exam: str
    class_: str = Field(alias="class")
    teacher: Optional[str] = None


class ScheduleUpdate(CamelModel):
    name: Optional[str] = None
    result: Optional[ScheduleResult] = None


# Content API bodies are wrapped as {"data": ...}
class RegisterUserEnvelope(BaseModel):
    data: RegisterUserRequest


class StudentEnvelope(BaseModel):
    data: StudentCreate


class ClassCreateEnvelope(BaseModel):
    data: ClassCreate


class ClassUpdateEnvelope(BaseModel):
    data: ClassUpdate


class ExamCreateEnvelope(BaseModel):
    data: ExamCreate


class ExamUpdateEnvelope(BaseModel):
    data: ExamUpdate


class ScheduleCreateEnvelope(BaseModel):
    data: ScheduleCreate


class ScheduleUpdateEnvelope(BaseModel):
    data: ScheduleUpdate
