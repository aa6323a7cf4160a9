from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from course_manager.bootstrap import Bootstrapper
from course_manager.config import AppConfig
from course_manager.services.storage import CourseRepository


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("COURSE_MANAGER_SESSION_SECRET", raising=False)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/courses.db",
            "assets_root": "assets",
            "session_secret": "test-secret",
            "lti": {"platform_hosts": ["https://lms.example.com"]},
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> CourseRepository:
    return CourseRepository(temp_config)


class LmsPlatform:
    """Stand-in LMS that publishes a JWKS and signs launch id_tokens."""

    issuer = "https://lms.example.com"
    kid = "platform-key"

    def __init__(self) -> None:
        self.private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        jwk = RSAAlgorithm.to_jwk(self.private_key.public_key(), as_dict=True)
        jwk.update({"kid": self.kid, "alg": "RS256", "use": "sig"})
        self.jwks = {"keys": [jwk]}
        self.requests: List[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/api/lti/security/jwks":
            return httpx.Response(200, json=self.jwks)
        return httpx.Response(404)

    def id_token(
        self,
        *,
        client_id: str,
        nonce: str,
        deployment_id: Optional[str] = "dep-1",
        context: Optional[Dict[str, Any]] = None,
        **overrides: Any,
    ) -> str:
        now = int(time.time())
        claims: Dict[str, Any] = {
            "iss": self.issuer,
            "aud": client_id,
            "sub": "lms-user-1",
            "iat": now,
            "exp": now + 300,
            "nonce": nonce,
            "https://purl.imsglobal.org/spec/lti/claim/context": context
            or {"id": "course-77", "title": "CSC108 Fall"},
        }
        if deployment_id is not None:
            claims["https://purl.imsglobal.org/spec/lti/claim/deployment_id"] = deployment_id
        claims.update(overrides)
        return jwt.encode(claims, self.private_key, algorithm="RS256", headers={"kid": self.kid})


@pytest.fixture(scope="session")
def lms_platform() -> LmsPlatform:
    return LmsPlatform()
