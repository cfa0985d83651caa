"""Dev setup: create the source tables and seed a small demo data set.

Prints bearer tokens for the demo admin and student so the analytics
endpoints can be tried straight away.
"""
import random
from datetime import datetime, timedelta, timezone

from exam_analytics.core.security import create_access_token
from exam_analytics.db.models import (
    Attempt,
    AttemptStatusEnum,
    Exam,
    ExamAnswer,
    Question,
    RoleEnum,
    Topic,
    User,
)
from exam_analytics.db.session import Base, get_engine, get_session_factory

TOPICS = ["Algebra", "Geometry", "Probability", "Calculus"]
QUESTIONS_PER_TOPIC = 5
EXAMS = ["Diagnostic Test", "Midterm", "Final Exam"]

rng = random.Random(42)
now = datetime.now(timezone.utc)

# 1. Create all tables
engine = get_engine()
Base.metadata.create_all(bind=engine)
print("✅ All tables created")

session_factory = get_session_factory()
with session_factory() as db:
    if db.query(User).filter(User.email == "admin@example.com").first():
        print("  Demo data already present, nothing to do")
    else:
        # 2. Users
        admin = User(email="admin@example.com", name="Admin User", role=RoleEnum.ADMIN, is_enrolled=True)
        students = [
            User(email=f"student{i}@example.com", name=f"Student {i}", role=RoleEnum.STUDENT, is_enrolled=True)
            for i in range(1, 4)
        ]
        db.add_all([admin, *students])

        # 3. Topics & questions
        questions = []
        for name in TOPICS:
            topic = Topic(name=name)
            db.add(topic)
            for n in range(QUESTIONS_PER_TOPIC):
                questions.append(
                    Question(
                        question_text=f"{name} question {n + 1}",
                        correct_answer_index=rng.randrange(4),
                        topic=topic,
                    )
                )
        db.add_all(questions)

        # 4. Exams
        exams = [Exam(title=title, time_limit_seconds=3600) for title in EXAMS]
        db.add_all(exams)
        db.commit()
        print(f"✅ Created {len(students) + 1} users, {len(TOPICS)} topics, {len(questions)} questions")

        # 5. Attempts: each student improves a little over time; the last one is unfinished
        attempts = 0
        for s_index, student in enumerate(students):
            skill = 0.4 + 0.1 * s_index
            for e_index, exam in enumerate(exams):
                picked = rng.sample(questions, 8)
                started = now - timedelta(days=60 - 20 * e_index, hours=s_index)
                finished = e_index < len(exams) - 1 or s_index != 0
                attempt = Attempt(
                    exam_id=exam.id,
                    user_id=student.id,
                    status=AttemptStatusEnum.SUBMITTED if finished else AttemptStatusEnum.IN_PROGRESS,
                    total_questions=len(picked),
                    started_at=started,
                )
                db.add(attempt)
                db.flush()

                correct = 0
                elapsed = 0
                for q in picked if finished else picked[:3]:
                    elapsed += rng.randint(20, 90)
                    hit = rng.random() < skill + 0.1 * e_index
                    correct += hit
                    db.add(
                        ExamAnswer(
                            attempt_id=attempt.id,
                            question_id=q.id,
                            selected_option_index=q.correct_answer_index if hit else (q.correct_answer_index + 1) % 4,
                            is_correct=hit,
                            answered_at=started + timedelta(seconds=elapsed),
                        )
                    )
                if finished:
                    attempt.score = correct
                    attempt.time_taken_seconds = elapsed
                    attempt.submitted_at = started + timedelta(seconds=elapsed)
                attempts += 1
        db.commit()
        print(f"✅ Created {attempts} attempts")

    admin = db.query(User).filter(User.email == "admin@example.com").one()
    student = db.query(User).filter(User.email == "student1@example.com").one()
    print("\nAdmin token:")
    print(create_access_token({"sub": str(admin.id), "role": admin.role.value}))
    print(f"\nStudent token (user {student.id}):")
    print(create_access_token({"sub": str(student.id), "role": student.role.value}))
