from jose import jwt, JWTError
from datetime import timedelta, datetime, timezone
import time

from chat_server.exception import UnauthorizedError


class AuthSecurity:
    """Bearer token verification shared by HTTP requests and live connections.

    Token issuance belongs to the identity service; ``encode_token`` is kept
    for tooling and tests that need a locally signed token.
    """
    secret_key = None
    algorithm = 'HS256'
    access_token_expire_minutes = 7 * 24 * 60

    @classmethod
    def configure(cls, secret_key, algorithm='HS256', access_token_expire_minutes=7*24*60):
        cls.secret_key = secret_key
        cls.algorithm = algorithm
        cls.access_token_expire_minutes = access_token_expire_minutes

    @classmethod
    def encode_token(cls, data: dict, expires_delta: timedelta = None) -> str:
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=cls.access_token_expire_minutes))
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, cls.secret_key, algorithm=cls.algorithm)

    @classmethod
    def decode_token(cls, token: str) -> dict:
        if not token or token.count('.') != 2:
            raise UnauthorizedError("Malformed or missing token. Please provide a valid JWT token in the Authorization header.")
        if not cls.secret_key:
            raise UnauthorizedError("Token verification is not configured.")
        try:
            payload = jwt.decode(token, cls.secret_key, algorithms=[cls.algorithm])
        except JWTError as e:
            msg = str(e)
            if 'Signature has expired' in msg:
                raise UnauthorizedError("Token expired. Please login again or refresh your session.")
            elif 'Signature verification failed' in msg:
                raise UnauthorizedError("Invalid token signature. Please login again.")
            raise UnauthorizedError("Invalid token. Please check your authentication and try again.")

        exp = payload.get('exp')
        if exp is not None and int(float(exp)) < int(time.time()):
            raise UnauthorizedError("Token expired. Please login again or refresh your session.")
        if not payload.get('user_key'):
            raise UnauthorizedError("Token does not identify a user.")
        return payload


def extract_bearer_token(header_value: str) -> str:
    if not header_value or not header_value.startswith('Bearer '):
        return ''
    return header_value.split(' ', 1)[1].strip()


def get_auth_payload(request):
    """
    Extracts and decodes the Bearer token from the Authorization header in the request.
    Raises UnauthorizedError if missing or invalid.
    Returns the decoded payload.
    """
    token = extract_bearer_token(request.headers.get('Authorization'))
    if not token:
        token = request.headers.get('x-auth-token', '')
    if not token:
        raise UnauthorizedError('Missing or invalid token')
    return AuthSecurity.decode_token(token)
