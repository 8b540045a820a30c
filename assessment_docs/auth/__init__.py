from assessment_docs.auth.token import TokenPayload, get_current_user, verify_token
from assessment_docs.auth.rbac import require_role, DocumentReader, DocumentWriter

__all__ = [
    "TokenPayload", "get_current_user", "verify_token",
    "require_role", "DocumentReader", "DocumentWriter",
]
