"""
Content API: teachers, students, classes and exams.

Request and response bodies are wrapped as {"data": ...} so the web client
can talk to this server the same way it talks to a headless CMS.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from loguru import logger
from sqlalchemy.orm import Session

from ezmark.database import get_db
from ezmark.models import Class, Exam, Student, User
from ezmark.schemas import (
    ClassCreateEnvelope,
    ClassUpdateEnvelope,
    ExamCreateEnvelope,
    ExamUpdateEnvelope,
    RegisterUserEnvelope,
    StudentEnvelope,
)
from ezmark.serializers import class_to_dict, exam_to_dict, student_to_dict, user_to_dict

logger = logger.bind(module="routes.content")

router = APIRouter()


def get_user_or_404(db: Session, document_id: Optional[str]) -> Optional[User]:
    if not document_id:
        return None
    user = db.query(User).filter(User.document_id == document_id).first()
    if user is None:
        raise HTTPException(status_code=404, detail=f"User {document_id} not found")
    return user


def get_or_404(db: Session, model, document_id: str, label: str):
    instance = db.query(model).filter(model.document_id == document_id).first()
    if instance is None:
        raise HTTPException(status_code=404, detail=f"{label} {document_id} not found")
    return instance


def resolve_students(db: Session, document_ids: List[str]) -> List[Student]:
    students = db.query(Student).filter(Student.document_id.in_(document_ids)).all() if document_ids else []
    found = {s.document_id for s in students}
    missing = [d for d in document_ids if d not in found]
    if missing:
        raise HTTPException(status_code=400, detail=f"Unknown student(s): {', '.join(missing)}")
    return students


# =============================================================================
# Users
# =============================================================================

@router.post("/users")
def register_user(body: RegisterUserEnvelope, db: Session = Depends(get_db)):
    """
    Register a teacher by username.
    Registering the same username again returns the existing teacher.
    """
    payload = body.data
    username = payload.username.strip()
    if not username:
        raise HTTPException(status_code=400, detail="username is required")

    user = db.query(User).filter(User.username == username).first()
    if user is None:
        user = User(username=username, email=payload.email)
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"Registered teacher {username} ({user.document_id})")
    return {"data": user_to_dict(user)}


# =============================================================================
# Students
# =============================================================================

@router.get("/students")
def list_students(teacher: Optional[str] = None, db: Session = Depends(get_db)):
    query = db.query(Student)
    owner = get_user_or_404(db, teacher)
    if owner is not None:
        query = query.filter(Student.teacher_id == owner.id)
    return {"data": [student_to_dict(s) for s in query.order_by(Student.id).all()]}


@router.post("/students")
def create_student(body: StudentEnvelope, db: Session = Depends(get_db)):
    """Create a student, or return the existing one with the same student id."""
    payload = body.data
    existing = db.query(Student).filter(Student.student_id == payload.student_id).first()
    if existing is not None:
        return {"data": student_to_dict(existing)}

    owner = get_user_or_404(db, payload.teacher)
    student = Student(
        name=payload.name,
        student_id=payload.student_id,
        teacher_id=owner.id if owner else None,
    )
    db.add(student)
    db.commit()
    db.refresh(student)
    return {"data": student_to_dict(student)}


@router.delete("/students/{document_id}")
def delete_student(document_id: str, db: Session = Depends(get_db)):
    student = get_or_404(db, Student, document_id, "Student")
    data = student_to_dict(student)
    db.delete(student)
    db.commit()
    return {"data": data}


# =============================================================================
# Classes
# =============================================================================

@router.get("/classes")
def list_classes(teacher: Optional[str] = None, db: Session = Depends(get_db)):
    query = db.query(Class)
    owner = get_user_or_404(db, teacher)
    if owner is not None:
        query = query.filter(Class.teacher_id == owner.id)
    return {"data": [class_to_dict(c) for c in query.order_by(Class.id).all()]}


@router.get("/classes/{document_id}")
def get_class(document_id: str, db: Session = Depends(get_db)):
    return {"data": class_to_dict(get_or_404(db, Class, document_id, "Class"))}


@router.post("/classes")
def create_class(body: ClassCreateEnvelope, db: Session = Depends(get_db)):
    payload = body.data
    owner = get_user_or_404(db, payload.teacher)
    klass = Class(name=payload.name, teacher_id=owner.id if owner else None)
    klass.students = resolve_students(db, payload.students)
    db.add(klass)
    db.commit()
    db.refresh(klass)
    return {"data": class_to_dict(klass)}


@router.put("/classes/{document_id}")
def update_class(document_id: str, body: ClassUpdateEnvelope, db: Session = Depends(get_db)):
    klass = get_or_404(db, Class, document_id, "Class")
    payload = body.data
    if payload.name is not None:
        klass.name = payload.name
    if payload.students is not None:
        klass.students = resolve_students(db, payload.students)
    db.commit()
    db.refresh(klass)
    return {"data": class_to_dict(klass)}


@router.delete("/classes/{document_id}")
def delete_class(document_id: str, db: Session = Depends(get_db)):
    """Delete a class together with every schedule that uses it."""
    klass = get_or_404(db, Class, document_id, "Class")
    data = class_to_dict(klass)
    db.delete(klass)
    db.commit()
    return {"data": data}


# =============================================================================
# Exams
# =============================================================================

@router.get("/exams")
def list_exams(user: Optional[str] = None, db: Session = Depends(get_db)):
    query = db.query(Exam)
    owner = get_user_or_404(db, user)
    if owner is not None:
        query = query.filter(Exam.user_id == owner.id)
    return {"data": [exam_to_dict(e) for e in query.order_by(Exam.id).all()]}


@router.get("/exams/{document_id}")
def get_exam(document_id: str, db: Session = Depends(get_db)):
    return {"data": exam_to_dict(get_or_404(db, Exam, document_id, "Exam"))}


@router.post("/exams")
def create_exam(body: ExamCreateEnvelope, db: Session = Depends(get_db)):
    payload = body.data
    owner = get_user_or_404(db, payload.user)
    exam = Exam(
        project_name=payload.project_name,
        exam_data=payload.exam_data.model_dump(by_alias=True, mode="json") if payload.exam_data else {},
        user_id=owner.id if owner else None,
    )
    db.add(exam)
    db.commit()
    db.refresh(exam)
    return {"data": exam_to_dict(exam)}


@router.put("/exams/{document_id}")
def update_exam(document_id: str, body: ExamUpdateEnvelope, db: Session = Depends(get_db)):
    exam = get_or_404(db, Exam, document_id, "Exam")
    payload = body.data
    if payload.project_name is not None:
        exam.project_name = payload.project_name
    if payload.exam_data is not None:
        exam.exam_data = payload.exam_data.model_dump(by_alias=True, mode="json")
    db.commit()
    db.refresh(exam)
    return {"data": exam_to_dict(exam)}


@router.delete("/exams/{document_id}")
def delete_exam(document_id: str, db: Session = Depends(get_db)):
    """Delete an exam together with every schedule that uses it."""
    exam = get_or_404(db, Exam, document_id, "Exam")
    data = exam_to_dict(exam)
    db.delete(exam)
    db.commit()
    return {"data": data}
