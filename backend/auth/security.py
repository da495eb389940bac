import os

from jose import ExpiredSignatureError, JWTError, jwt

DEFAULT_ALGORITHM = "HS256"
DEFAULT_JWT_ISSUER = "storefront-api"


def get_jwt_config() -> dict:
    secret_key = os.getenv("JWT_SECRET", "").strip()
    algorithm = os.getenv("JWT_ALGORITHM", DEFAULT_ALGORITHM).strip()
    issuer = os.getenv("JWT_ISSUER", DEFAULT_JWT_ISSUER).strip()

    if not secret_key:
        raise RuntimeError("JWT_SECRET is required")
    if not algorithm:
        raise RuntimeError("JWT_ALGORITHM is required")
    if not issuer:
        raise RuntimeError("JWT_ISSUER is required")

    return {
        "secret_key": secret_key,
        "algorithm": algorithm,
        "issuer": issuer,
    }


def decode_and_validate_jwt(token: str, *, expected_type: str | None = None) -> dict:
    settings = get_jwt_config()
    try:
        payload = jwt.decode(
            token,
            settings["secret_key"],
            algorithms=[settings["algorithm"]],
            issuer=settings["issuer"],
            options={"verify_aud": False},
        )
    except ExpiredSignatureError as exc:
        raise ValueError("Token expired") from exc
    except JWTError as exc:
        raise ValueError("Invalid token") from exc

    token_type = str(payload.get("type", "")).strip().lower()
    if expected_type is not None and token_type != expected_type:
        raise ValueError("Invalid token type")
    if not str(payload.get("sub", "")).strip():
        raise ValueError("Token payload is missing subject")
    return payload


def decode_access_token(token: str) -> dict:
    return decode_and_validate_jwt(token, expected_type="access")


def parse_subject_identity(sub: object) -> str:
    raw = str(sub).strip() if sub is not None else ""
    if not raw:
        raise ValueError("Invalid token subject")
    return raw
