"""Error taxonomy shared by the account and post operations.

Each error carries the HTTP status it maps to and a message that is safe to
show to the user.
"""


class BlogError(Exception):
    status_code = 500
    default_message = "Something went wrong on the server."

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(BlogError):
    status_code = 400
    default_message = "Invalid input."

    def __init__(self, messages):
        if isinstance(messages, str):
            messages = [messages]
        self.messages = list(messages)
        super().__init__(' '.join(self.messages))


class AuthError(BlogError):
    status_code = 401
    default_message = "Login required"


class ForbiddenError(BlogError):
    status_code = 403
    default_message = "You do not have permission to perform this action."


class NotFoundError(BlogError):
    status_code = 404
    default_message = "Not found."


class ConflictError(BlogError):
    status_code = 409
    default_message = "Username or email already exists."


class TokenError(BlogError):
    status_code = 400
    default_message = "Password reset token is invalid or has expired."


class SessionError(BlogError):
    default_message = "Could not log out."


class ServerError(BlogError):
    pass
