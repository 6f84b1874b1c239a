"""Small helpers shared by the launcher modules.
"""

from datetime import datetime, timezone
from pathlib import Path
import hashlib
import base64
import json

from typing import Optional, Tuple


def calc_input_sha1(input_stream, *, buffer_len: int = 8192) -> str:
    """Hex sha1 digest of a binary stream supporting `readinto`, read to its end.
    """
    digest = hashlib.sha1()
    buffer = memoryview(bytearray(buffer_len))
    while True:
        read_len = input_stream.readinto(buffer)
        if not read_len:
            return digest.hexdigest()
        digest.update(buffer[:read_len])


def calc_file_sha1(path: Path) -> Optional[str]:
    """Hex sha1 digest of a file, none if it can't be read.
    """
    try:
        with path.open("rb") as fp:
            return calc_input_sha1(fp)
    except OSError:
        return None


def from_iso_date(raw: str) -> datetime:
    """Parse an ISO date as given by Mojang and Microsoft services. A trailing 'Z' is
    accepted and naive dates are considered UTC.
    """
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def base64url_decode(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def decode_jwt_payload(jwt: str) -> dict:
    """Decode the payload part of a JWT without checking its signature.

    :raises ValueError: If the token is not a valid JWT.
    """
    parts = jwt.split(".")
    if len(parts) != 3:
        raise ValueError("invalid jwt: expected 3 parts")
    return json.loads(base64url_decode(parts[1]))


class LibrarySpecifier:
    """Maven coordinates of a library, `group:artifact:version[:classifier][@extension]`.
    """

    __slots__ = "group", "artifact", "version", "classifier", "extension"

    def __init__(self, group: str, artifact: str, version: str, classifier: Optional[str] = None, extension: str = "jar"):
        self.group = group
        self.artifact = artifact
        self.version = version
        self.classifier = classifier
        self.extension = extension

    @classmethod
    def from_str(cls, s: str) -> "LibrarySpecifier":
        """:raises ValueError: If the string has less than 3 parts or an empty extension.
        """

        coords, sep, extension = s.partition("@")
        if not sep:
            extension = "jar"
        elif not extension:
            raise ValueError(f"invalid library specifier {s!r}: empty extension")

        parts = coords.split(":", 3)
        if len(parts) < 3:
            raise ValueError(f"invalid library specifier {s!r}: too few parts")

        classifier = parts[3] if len(parts) == 4 else None
        return cls(parts[0], parts[1], parts[2], classifier, extension)

    def with_classifier(self, classifier: Optional[str]) -> "LibrarySpecifier":
        return LibrarySpecifier(self.group, self.artifact, self.version, classifier, self.extension)

    def file_path(self) -> str:
        """Relative path of the library in a maven repository, always '/' separated so
        that it can be joined to both URLs and local directories. For example
        `org.lwjgl:lwjgl:3.3.1:natives-linux` is stored at
        `org/lwjgl/lwjgl/3.3.1/lwjgl-3.3.1-natives-linux.jar`.
        """
        name = f"{self.artifact}-{self.version}"
        if self.classifier is not None:
            name += f"-{self.classifier}"
        return "/".join((*self.group.split("."), self.artifact, self.version, f"{name}.{self.extension}"))

    def _key(self) -> Tuple[str, str, str, Optional[str], str]:
        return self.group, self.artifact, self.version, self.classifier, self.extension

    def __str__(self) -> str:
        s = f"{self.group}:{self.artifact}:{self.version}"
        if self.classifier is not None:
            s += f":{self.classifier}"
        if self.extension != "jar":
            s += f"@{self.extension}"
        return s

    def __eq__(self, other) -> bool:
        return isinstance(other, LibrarySpecifier) and self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __repr__(self) -> str:
        return f"<LibrarySpecifier {self}>"
