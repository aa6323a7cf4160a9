"""LTI 1.3 tool support: signing keys, OIDC launches and course provisioning."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import os
import secrets
from pathlib import Path
from typing import Any, Dict, List, Mapping, MutableMapping, Optional
from urllib.parse import urlencode, urlsplit

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from ..config import AppConfig
from .courses import CourseService, RecordNotFoundError
from .events import emit_file_event, log_app_event
from .storage import (
    ADMIN_ROLE,
    INSTRUCTOR,
    CourseRecord,
    CourseRepository,
    LtiDeploymentRecord,
    UserRecord,
)


LOGGER = logging.getLogger(__name__)


JWT_ALGORITHM = "RS256"
LTI_CLAIM_PREFIX = "https://purl.imsglobal.org/spec/lti/claim/"
DEPLOYMENT_CLAIM = LTI_CLAIM_PREFIX + "deployment_id"
CONTEXT_CLAIM = LTI_CLAIM_PREFIX + "context"
SESSION_LAUNCH_KEY = "lti_launch"
SESSION_DEPLOYMENT_KEY = "lti_deployment_id"

_REQUIRED_LOGIN_PARAMS = ("iss", "login_hint", "client_id", "target_link_uri")


class LtiError(RuntimeError):
    """Raised when an LTI launch cannot be completed."""


class LtiPermissionError(LtiError):
    """Raised when a user may not link a deployment to a course."""


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8 or 1, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


class LtiKeyStore:
    """The tool's RSA signing key, created on first use."""

    def __init__(self, key_file: Path) -> None:
        self._key_file = Path(key_file)
        self._private_key: Optional[rsa.RSAPrivateKey] = None

    @property
    def key_file(self) -> Path:
        return self._key_file

    @property
    def private_key(self) -> rsa.RSAPrivateKey:
        if self._private_key is None:
            self._private_key = self._load_or_create()
        return self._private_key

    def _load_or_create(self) -> rsa.RSAPrivateKey:
        if self._key_file.exists():
            try:
                key = serialization.load_pem_private_key(
                    self._key_file.read_bytes(), password=None
                )
            except ValueError as error:
                raise LtiError(f"Could not read LTI key '{self._key_file}': {error}") from error
            if not isinstance(key, rsa.RSAPrivateKey):
                raise LtiError(f"LTI key '{self._key_file}' is not an RSA private key")
            return key

        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        self._key_file.parent.mkdir(parents=True, exist_ok=True)
        self._key_file.write_bytes(pem)
        os.chmod(self._key_file, 0o600)
        emit_file_event("LTI signing key generated", payload={"path": self._key_file})
        return key

    @property
    def kid(self) -> str:
        """RFC 7638 thumbprint of the public key."""

        numbers = self.private_key.public_key().public_numbers()
        canonical = json.dumps(
            {"e": _b64url_uint(numbers.e), "kty": "RSA", "n": _b64url_uint(numbers.n)},
            separators=(",", ":"),
            sort_keys=True,
        )
        digest = hashlib.sha256(canonical.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def public_jwk(self) -> Dict[str, Any]:
        jwk = RSAAlgorithm.to_jwk(self.private_key.public_key(), as_dict=True)
        jwk.update({"kid": self.kid, "alg": JWT_ALGORITHM, "use": "sig"})
        return jwk

    def public_jwk_set(self) -> Dict[str, List[Dict[str, Any]]]:
        return {"keys": [self.public_jwk()]}

    def sign(self, payload: Mapping[str, Any]) -> str:
        return jwt.encode(
            dict(payload),
            self.private_key,
            algorithm=JWT_ALGORITHM,
            headers={"kid": self.kid},
        )


class LtiLaunchService:
    """OIDC third-party login initiation and id_token validation."""

    def __init__(
        self,
        repository: CourseRepository,
        config: AppConfig,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self._repository = repository
        self._settings = config.lti
        self._transport = transport
        self._timeout = timeout

    def tool_configuration(self, base_url: str) -> Dict[str, Any]:
        base_url = base_url.rstrip("/")
        return {
            "title": self._settings.tool_title,
            "description": self._settings.tool_description,
            "oidc_initiation_url": f"{base_url}/lti/launch",
            "target_link_uri": f"{base_url}/lti/redirect_login",
            "public_jwk_url": f"{base_url}/lti/public_jwk",
            "scopes": [],
            "extensions": [
                {
                    "platform": "canvas.instructure.com",
                    "privacy_level": "public",
                    "settings": {
                        "placements": [
                            {
                                "placement": "course_navigation",
                                "message_type": "LtiResourceLinkRequest",
                                "target_link_uri": f"{base_url}/lti/redirect_login",
                            }
                        ]
                    },
                }
            ],
        }

    @staticmethod
    def _platform_host(issuer: str) -> str:
        parts = urlsplit(issuer)
        if not parts.scheme or not parts.netloc:
            raise LtiError(f"Issuer '{issuer}' is not a URL")
        return f"{parts.scheme}://{parts.netloc}"

    def begin_launch(
        self,
        params: Mapping[str, Any],
        session: MutableMapping[str, Any],
        redirect_uri: str,
    ) -> str:
        """Record launch state in *session* and return the platform authorize URL."""

        missing = [name for name in _REQUIRED_LOGIN_PARAMS if not params.get(name)]
        if missing:
            raise LtiError(f"Missing launch parameters: {', '.join(missing)}")

        issuer = str(params["iss"])
        host = self._platform_host(issuer)
        if self._settings.platform_hosts and host not in self._settings.platform_hosts:
            raise LtiError(f"Platform '{host}' is not allowed to launch this tool")

        state = secrets.token_urlsafe(32)
        nonce = secrets.token_urlsafe(32)
        session[SESSION_LAUNCH_KEY] = {
            "state": state,
            "nonce": nonce,
            "client_id": str(params["client_id"]),
            "issuer": issuer,
        }
        query = {
            "scope": "openid",
            "response_type": "id_token",
            "response_mode": "form_post",
            "prompt": "none",
            "redirect_uri": redirect_uri,
            "login_hint": params["login_hint"],
            "client_id": params["client_id"],
            "state": state,
            "nonce": nonce,
        }
        if params.get("lti_message_hint"):
            query["lti_message_hint"] = params["lti_message_hint"]
        LOGGER.info("Starting LTI launch for client %s on %s", params["client_id"], host)
        return f"{host}{self._settings.authorize_path}?{urlencode(query)}"

    def _fetch_jwks(self, host: str) -> jwt.PyJWKSet:
        url = f"{host}{self._settings.jwks_path}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.get(url)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as error:
            raise LtiError(f"Could not fetch platform keys from {url}: {error}") from error
        try:
            return jwt.PyJWKSet.from_dict(data)
        except jwt.PyJWTError as error:
            raise LtiError(f"Platform keys from {url} are invalid: {error}") from error

    def complete_launch(
        self,
        id_token: str,
        state: str,
        session: MutableMapping[str, Any],
    ) -> LtiDeploymentRecord:
        launch = session.pop(SESSION_LAUNCH_KEY, None)
        if not launch or not state or not secrets.compare_digest(str(state), launch["state"]):
            raise LtiError("Invalid or expired launch state")

        issuer = launch["issuer"]
        client_id = launch["client_id"]
        host = self._platform_host(issuer)
        key_set = self._fetch_jwks(host)

        try:
            header = jwt.get_unverified_header(id_token)
            kid = header.get("kid")
            if kid:
                signing_key = key_set[kid]
            elif len(key_set.keys) == 1:
                signing_key = key_set.keys[0]
            else:
                raise LtiError("id_token does not name its signing key")
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=[JWT_ALGORITHM],
                audience=client_id,
                issuer=issuer,
            )
        except KeyError as error:
            raise LtiError(f"Unknown signing key {error}") from error
        except jwt.PyJWTError as error:
            raise LtiError(f"Invalid id_token: {error}") from error

        if claims.get("nonce") != launch["nonce"]:
            raise LtiError("id_token nonce does not match the launch")
        deployment_id = claims.get(DEPLOYMENT_CLAIM)
        context = claims.get(CONTEXT_CLAIM)
        if not deployment_id:
            raise LtiError("id_token has no deployment id")
        if not isinstance(context, Mapping):
            raise LtiError("id_token has no course context")

        lti_client_id = self._repository.upsert_lti_client(client_id, host)
        record_id = self._repository.upsert_lti_deployment(
            lti_client_id,
            str(deployment_id),
            lms_course_name=context.get("title"),
            lms_course_id=str(context["id"]) if context.get("id") is not None else None,
        )
        session[SESSION_DEPLOYMENT_KEY] = record_id
        deployment = self._repository.get_lti_deployment(record_id)
        assert deployment is not None
        log_app_event(
            "LTI launch completed",
            deployment_id=record_id,
            host=host,
            lms_course=deployment.lms_course_name,
        )
        return deployment


class LtiProvisioner:
    """Link LTI deployments to existing or new courses."""

    def __init__(self, repository: CourseRepository, course_service: CourseService) -> None:
        self._repository = repository
        self._courses = course_service

    def get_deployment(self, deployment_id: int) -> LtiDeploymentRecord:
        deployment = self._repository.get_lti_deployment(deployment_id)
        if deployment is None:
            raise RecordNotFoundError(f"LTI deployment {deployment_id} not found")
        return deployment

    def courses_for_user(self, user: UserRecord) -> List[CourseRecord]:
        if user.is_admin:
            return list(self._repository.iter_courses())
        return list(self._repository.iter_courses_for_user(user.id, role_types=(INSTRUCTOR,)))

    def can_link(self, user: UserRecord, course_id: int) -> bool:
        if user.is_admin:
            return True
        role = self._repository.get_role(user.id, course_id)
        return role is not None and role.type == INSTRUCTOR

    def choose_course(self, user: UserRecord, deployment_id: int, course_id: int) -> CourseRecord:
        self.get_deployment(deployment_id)
        course = self._courses.get_course(course_id)
        if not self.can_link(user, course_id):
            raise LtiPermissionError(
                f"You do not have permission to link {course.display_name}"
            )
        self._repository.link_lti_deployment(deployment_id, course_id)
        log_app_event(
            "LTI deployment linked",
            deployment_id=deployment_id,
            course_id=course_id,
            user=user.user_name,
        )
        return course

    def create_course(
        self,
        user: UserRecord,
        deployment_id: int,
        name: str,
        display_name: str,
    ) -> CourseRecord:
        self.get_deployment(deployment_id)
        course = self._courses.create_course(name, display_name, is_hidden=True)
        role_type = ADMIN_ROLE if user.is_admin else INSTRUCTOR
        self._repository.add_role(user.id, course.id, role_type)
        self._repository.link_lti_deployment(deployment_id, course.id)
        log_app_event(
            "LTI course created",
            deployment_id=deployment_id,
            course_id=course.id,
            role=role_type,
        )
        return course


__all__ = [
    "CONTEXT_CLAIM",
    "DEPLOYMENT_CLAIM",
    "JWT_ALGORITHM",
    "LtiError",
    "LtiKeyStore",
    "LtiLaunchService",
    "LtiPermissionError",
    "LtiProvisioner",
    "SESSION_DEPLOYMENT_KEY",
    "SESSION_LAUNCH_KEY",
]
