class ProctoringError(Exception):
    """Base class for pipeline errors surfaced to API callers"""


class SessionNotFoundError(ProctoringError):
    def __init__(self, session_id: str):
        super().__init__(f"Exam session {session_id} not found")
        self.session_id = session_id


class SessionClosedError(ProctoringError):
    def __init__(self, session_id: str, status: str):
        super().__init__(f"Session closed: {session_id} is {status}")
        self.session_id = session_id
        self.status = status


class ExamNotFoundError(ProctoringError):
    def __init__(self, exam_id: str):
        super().__init__(f"Exam {exam_id} not found")
        self.exam_id = exam_id
