from pydantic import BaseModel
from typing import Optional

# ======================
# TOKEN SCHEMAS
# ======================

class TokenData(BaseModel):
    user_id: Optional[int] = None
    # Canonical runtime roles are "user" and "admin".
    role: Optional[str] = None
