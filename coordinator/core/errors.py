"""Exceptions raised by the execution runtime"""


class ExecutionRuntimeError(Exception):
    """Base class for runtime errors"""
    pass


# Admission: rejected before a job exists, nothing to retry


class AdmissionError(ExecutionRuntimeError):
    pass


class RateLimitExceeded(AdmissionError):

    def __init__(self, agent_id: str, user_id: str):
        self.agent_id = agent_id
        self.user_id = user_id
        super().__init__(
            f"Rate limit exceeded for user {user_id} agent {agent_id}")


class AgentNotFound(AdmissionError):

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} not found")


class AgentInactive(AdmissionError):

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} is not active")


class UserNotEntitled(AdmissionError):

    def __init__(self, agent_id: str, user_id: str):
        self.agent_id = agent_id
        self.user_id = user_id
        super().__init__(
            f"Agent {agent_id} is not installed or not active for user {user_id}"
        )


# Credentials: terminal, surfaced to the caller immediately


class CredentialError(ExecutionRuntimeError):
    pass


class MissingCredential(CredentialError):

    def __init__(self, field_name: str):
        self.field_name = field_name
        super().__init__(f"Missing required credential: {field_name}")


# Lookups and transitions


class JobNotFound(ExecutionRuntimeError):

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidJobTransition(ExecutionRuntimeError):
    pass


class ScheduleNotFound(ExecutionRuntimeError):

    def __init__(self, schedule_id: str):
        self.schedule_id = schedule_id
        super().__init__(f"Schedule {schedule_id} not found")


class InvalidSchedule(ExecutionRuntimeError):
    pass
