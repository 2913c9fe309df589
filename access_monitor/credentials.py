import base64
import binascii
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Credential:
    """Basic-auth identity used to open the access stream."""
    username: str
    password: str = field(repr=False)

    @property
    def token(self) -> str:
        return base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")

    def authorization_header(self) -> str:
        return f"Basic {self.token}"

    @classmethod
    def from_token(cls, token: str) -> "Credential":
        """Decodes a base64 'user:password' token. Raises ValueError when malformed."""
        try:
            decoded = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeError) as e:
            raise ValueError(f"Invalid credential token: {e}") from e
        username, sep, password = decoded.partition(":")
        if not sep or not username:
            raise ValueError("Invalid credential token: expected 'user:password'")
        return cls(username, password)
