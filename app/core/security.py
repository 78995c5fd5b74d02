import uuid
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from pydantic import BaseModel
from app.core.config import settings

http_bearer = HTTPBearer(auto_error=False)

class Principal(BaseModel):
    user_id: uuid.UUID
    roles: list[str] = []
    scopes: list[str] = []
    # set for provider accounts; a provider may only manage its own availability
    provider_id: uuid.UUID | None = None

    def has_scopes(self, *needed: str) -> bool:
        return "*" in self.scopes or set(needed).issubset(self.scopes)

    def acts_for(self, provider_id: uuid.UUID) -> bool:
        if "*" in self.scopes or "admin" in self.roles:
            return True
        return self.provider_id is not None and self.provider_id == provider_id

def _decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG], audience=settings.REQUIRED_AUDIENCE)
    except JWTError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid token: {e}")

def _uuid_claim(data: dict, *names: str) -> uuid.UUID | None:
    raw = next((data[n] for n in names if data.get(n)), None)
    if raw is None:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Invalid token claim: {names[0]}")

async def get_principal(creds: HTTPAuthorizationCredentials | None = Depends(http_bearer)) -> Principal:
    # In local env a missing token acts as an all-scopes operator
    if creds is None and settings.ENV == "local":
        return Principal(user_id=uuid.uuid4(), roles=["admin"], scopes=["*"])
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing token")

    data = _decode_token(creds.credentials)
    user_id = _uuid_claim(data, "sub", "user_id")
    if user_id is None:
        raise HTTPException(status_code=401, detail="Token has no subject")
    roles = data.get("roles", [])
    provider_id = _uuid_claim(data, "provider_id")
    if provider_id is None and "provider" in roles:
        provider_id = user_id
    return Principal(user_id=user_id, roles=roles, scopes=data.get("scopes", []), provider_id=provider_id)

def require_scopes(*needed: str):
    def dep(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has_scopes(*needed):
            raise HTTPException(status_code=403, detail="Insufficient scopes")
        return principal
    return dep

def ensure_acts_for(principal: Principal, provider_id: uuid.UUID) -> None:
    if not principal.acts_for(provider_id):
        raise HTTPException(status_code=403, detail="Not permitted for this provider")
