"""
Wire representations of the database entities (camelCase, keyed by documentId).
"""
from typing import Optional

from ezmark.models import Class, Exam, Schedule, Student, User
from ezmark.services.schedule_store import read_result, serialise_schedule_result


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def user_to_dict(user: Optional[User]) -> Optional[dict]:
    if user is None:
        return None
    return {
        "id": user.id,
        "documentId": user.document_id,
        "username": user.username,
        "email": user.email,
    }


def student_to_dict(student: Student) -> dict:
    return {
        "id": student.id,
        "documentId": student.document_id,
        "name": student.name,
        "studentId": student.student_id,
        "createdAt": _iso(student.created_at),
    }


def class_to_dict(klass: Optional[Class]) -> Optional[dict]:
    if klass is None:
        return None
    return {
        "id": klass.id,
        "documentId": klass.document_id,
        "name": klass.name,
        "students": [student_to_dict(s) for s in klass.students],
        "teacher": user_to_dict(klass.teacher),
        "createdAt": _iso(klass.created_at),
    }


def exam_to_dict(exam: Optional[Exam]) -> Optional[dict]:
    if exam is None:
        return None
    return {
        "id": exam.id,
        "documentId": exam.document_id,
        "projectName": exam.project_name,
        "examData": exam.exam_data,
        "createdAt": _iso(exam.created_at),
        "updatedAt": _iso(exam.updated_at),
    }


def schedule_to_dict(schedule: Schedule, populate: bool = True) -> dict:
    data = {
        "id": schedule.id,
        "documentId": schedule.document_id,
        "name": schedule.name,
        "result": serialise_schedule_result(read_result(schedule)),
        "createdAt": _iso(schedule.created_at),
        "updatedAt": _iso(schedule.updated_at),
    }
    if populate:
        data["exam"] = exam_to_dict(schedule.exam)
        data["class"] = class_to_dict(schedule.klass)
        data["teacher"] = user_to_dict(schedule.teacher)
    return data
