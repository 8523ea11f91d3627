from __future__ import annotations


class DispatchError(Exception):
    """Base class for failures raised by the dispatch core."""


class StoreError(DispatchError):
    """A query or write against the row store failed."""


class IncidentNotFound(DispatchError):
    def __init__(self, incident_id: int) -> None:
        super().__init__(f"Incident {incident_id} not found")
        self.incident_id = incident_id


class InvalidTransition(DispatchError):
    def __init__(self, current: str, action: str) -> None:
        super().__init__(f"Cannot {action} an incident that is {current}")
        self.current = current
        self.action = action


class NotPermitted(DispatchError):
    def __init__(self, role: str, action: str) -> None:
        super().__init__(f"Role {role!r} may not {action} this incident")
        self.role = role
        self.action = action


class AssignmentError(DispatchError):
    """The assignment strategy could not produce a result."""
