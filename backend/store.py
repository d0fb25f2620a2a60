import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from config import DEFAULT_LANGUAGES
from models import (CLAIMABLE, Example, JudgeStatus, Problem, ProblemStatus, ProgrammingLanguage,
                    Submission, UserProblemStatus, async_session, can_transition)

logger = logging.getLogger(__name__)

USER_STATUS_RETRIES = 5


class ProblemStore:
    def __init__(self, session_factory=async_session):
        self.session_factory = session_factory

    async def get_problem(self, problem_id: int) -> Optional[Problem]:
        """Problem with its templates and testers loaded."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Problem)
                .options(selectinload(Problem.templates), selectinload(Problem.testers))
                .where(Problem.id == problem_id)
            )
            return result.scalar_one_or_none()

    async def ordered_examples(self, problem_id: int, include_hidden: bool = True) -> List[Example]:
        query = select(Example).where(Example.problem_id == problem_id)
        if not include_hidden:
            query = query.where(Example.is_hidden.is_(False))
        query = query.order_by(Example.sort_order, Example.id)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_language(self, language_id: int) -> Optional[ProgrammingLanguage]:
        async with self.session_factory() as session:
            return await session.get(ProgrammingLanguage, language_id)

    async def list_languages(self) -> List[ProgrammingLanguage]:
        async with self.session_factory() as session:
            result = await session.execute(select(ProgrammingLanguage).order_by(ProgrammingLanguage.id))
            return list(result.scalars().all())

    async def update_statistics(self, problem_id: int, total: int, accepted: int) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Problem)
                .where(Problem.id == problem_id)
                .values(total_submissions=total, accepted_submissions=accepted)
            )
            await session.commit()

    async def refresh_statistics(self, problem_id: int) -> Tuple[int, int]:
        """Recount the problem's submissions and store the totals."""
        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count(Submission.id)).where(Submission.problem_id == problem_id)
            )
            accepted = await session.scalar(
                select(func.count(Submission.id)).where(
                    Submission.problem_id == problem_id,
                    Submission.status == JudgeStatus.ACCEPTED.value,
                )
            )
        await self.update_statistics(problem_id, total, accepted)
        return total, accepted


class SubmissionStore:
    def __init__(self, session_factory=async_session):
        self.session_factory = session_factory

    async def get(self, submission_id: int) -> Optional[Submission]:
        async with self.session_factory() as session:
            return await session.get(Submission, submission_id)

    async def create(self, problem_id: int, language_id: int, user_id: int, source_code: str,
                     contest_id: Optional[int] = None) -> Submission:
        submission = Submission(
            problem_id=problem_id,
            programming_language_id=language_id,
            user_id=user_id,
            contest_id=contest_id,
            source_code=source_code,
            status=JudgeStatus.QUEUED.value,
        )
        async with self.session_factory() as session:
            session.add(submission)
            await session.commit()
            await session.refresh(submission)
        return submission

    async def list(self, problem_id: Optional[int] = None, limit: int = 50) -> List[Submission]:
        query = select(Submission).order_by(Submission.id.desc()).limit(limit)
        if problem_id is not None:
            query = query.where(Submission.problem_id == problem_id)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _conditional_update(self, submission_id: int, allowed, **values) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Submission)
                .where(Submission.id == submission_id, Submission.status.in_([s.value for s in allowed]))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_enqueued(self, submission_id: int) -> bool:
        return await self._conditional_update(
            submission_id, (JudgeStatus.QUEUED,), status=JudgeStatus.ENQUEUED.value
        )

    async def claim(self, submission_id: int, status: JudgeStatus) -> bool:
        """Atomically move a waiting submission into judging; False if someone else has it."""
        return await self._conditional_update(submission_id, CLAIMABLE, status=status.value)

    async def update_status(self, submission_id: int, status: JudgeStatus,
                            expected: Optional[JudgeStatus] = None, **values) -> bool:
        """Set the status; with expected, only if the submission is still in that state."""
        if expected is None:
            async with self.session_factory() as session:
                await session.execute(
                    update(Submission)
                    .where(Submission.id == submission_id)
                    .values(status=status.value, **values)
                )
                await session.commit()
            return True

        if not can_transition(expected, status):
            raise ValueError(f"Illegal status transition {expected.value} -> {status.value}")
        return await self._conditional_update(submission_id, (expected,), status=status.value, **values)

    async def update_time_used(self, submission_id: int, seconds: float) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(Submission).where(Submission.id == submission_id).values(time_used=seconds)
            )
            await session.commit()

    async def find_or_create_user_problem_status(self, session, user_id: int,
                                                 problem_id: int) -> UserProblemStatus:
        """Locked status row for (user, problem); call inside a transaction."""
        record = await session.scalar(
            select(UserProblemStatus)
            .where(UserProblemStatus.user_id == user_id, UserProblemStatus.problem_id == problem_id)
            .with_for_update()
        )
        if record is None:
            record = UserProblemStatus(user_id=user_id, problem_id=problem_id,
                                       status=ProblemStatus.UNATTEMPTED.value)
            session.add(record)
            # a concurrent insert for the same pair fails here on the unique constraint
            await session.flush()
        return record

    async def record_user_problem_status(self, user_id: int, problem_id: int, solved: bool) -> str:
        """Solved if accepted; otherwise attempted, unless the user already solved it."""
        for attempt in range(1, USER_STATUS_RETRIES + 1):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        record = await self.find_or_create_user_problem_status(session, user_id, problem_id)
                        statement = update(UserProblemStatus).where(UserProblemStatus.id == record.id)
                        if solved:
                            statement = statement.values(status=ProblemStatus.SOLVED.value)
                        else:
                            statement = statement.where(
                                UserProblemStatus.status != ProblemStatus.SOLVED.value
                            ).values(status=ProblemStatus.ATTEMPTED.value)
                        await session.execute(statement.execution_options(synchronize_session=False))
                        return await session.scalar(
                            select(UserProblemStatus.status).where(UserProblemStatus.id == record.id)
                        )
            except IntegrityError:
                if attempt == USER_STATUS_RETRIES:
                    raise
                logger.debug(f"User {user_id} problem {problem_id}: status row created concurrently, retrying")


async def seed_languages(session_factory=async_session, languages=DEFAULT_LANGUAGES) -> int:
    """Insert the default languages into an empty table; returns how many were added."""
    async with session_factory() as session:
        existing = await session.scalar(select(func.count(ProgrammingLanguage.id)))
        if existing:
            return 0
        session.add_all(ProgrammingLanguage(**language) for language in languages)
        await session.commit()
    return len(languages)
