class ApiError(Exception):
    def __init__(self, message, status=None, payload=None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.payload = payload or {}


class ValidationError(Exception):
    def __init__(self, message):
        super().__init__(message)
        self.message = message


class MutationError(Exception):
    def __init__(self, message, status=None):
        super().__init__(message)
        self.message = message
        self.status = status


class ActionInProgress(Exception):
    def __init__(self, action):
        super().__init__(f"{action} is already in progress.")
        self.action = action
        self.message = str(self)
