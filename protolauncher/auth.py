"""Mojang and Microsoft authentication. Providers return `Credential` objects that are
owned and persisted by the caller, the `CredentialBroker` keeps them fresh.
"""

from datetime import datetime, timedelta
from urllib import parse as url_parse
from uuid import uuid4
import threading
import logging
import json

from .util import decode_jwt_payload, from_iso_date, utc_now
from .http import HttpError, HttpResponse, http_request
from .context import Endpoints

from typing import Optional, Dict, Tuple, Any, Callable


logger = logging.getLogger(__name__)

MS_CLIENT_ID = "570b4885-8053-4442-a511-c6cc8df24dcb"
MS_REDIRECT_URI = "https://login.microsoftonline.com/common/oauth2/nativeclient"
MS_SCOPE = "XboxLive.signin offline_access"


class Credential:
    """Identity of a player with the tokens authorizing its game sessions. The expiry
    is an absolute UTC instant.
    """

    LEGACY = "legacy"
    MICROSOFT = "microsoft"

    __slots__ = "provider", "uuid", "username", "access_token", "refresh_token", "chain", \
        "expires_at", "client_id", "user_properties", "xuid"

    def __init__(self,
        provider: str,
        uuid: str,
        username: str,
        access_token: str,
        expires_at: datetime, *,
        refresh_token: Optional[str] = None,
        chain: Optional[Dict[str, str]] = None,
        client_id: str = "",
        user_properties: str = "{}",
        xuid: str = ""
    ) -> None:
        self.provider = provider
        self.uuid = uuid
        self.username = username
        self.access_token = access_token
        self.expires_at = expires_at
        self.refresh_token = refresh_token
        self.chain = {} if chain is None else chain
        self.client_id = client_id
        self.user_properties = user_properties
        self.xuid = xuid

    @property
    def key(self) -> Tuple[str, str]:
        """The (provider, user) key, a single credential should exist for it.
        """
        return self.provider, self.uuid

    @property
    def user_type(self) -> str:
        """Type of user given to the game's command line.
        """
        return "msa" if self.provider == self.MICROSOFT else "mojang"

    def is_expired(self, margin: timedelta = timedelta(), now: Optional[datetime] = None) -> bool:
        """Return true if this credential is expired or will expire in the given margin.
        """
        return (utc_now() if now is None else now) + margin >= self.expires_at

    def with_tokens(self, access_token: str, expires_at: datetime, **kwargs) -> "Credential":
        """Return a copy of this credential with new tokens, other keyword arguments are
        used to replace other fields.
        """
        fields = {name: getattr(self, name) for name in self.__slots__}
        fields.update(kwargs)
        fields["access_token"] = access_token
        fields["expires_at"] = expires_at
        provider = fields.pop("provider")
        uuid = fields.pop("uuid")
        username = fields.pop("username")
        return Credential(provider, uuid, username, fields.pop("access_token"), fields.pop("expires_at"), **fields)

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {name: getattr(self, name) for name in self.__slots__}
        data["expires_at"] = self.expires_at.isoformat()
        data["chain"] = dict(self.chain)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Credential":
        """Restore a credential saved with `to_dict`.

        :raises ValueError: If a required field is missing or invalid.
        """
        try:
            return cls(
                data["provider"],
                data["uuid"],
                data["username"],
                data["access_token"],
                from_iso_date(data["expires_at"]),
                refresh_token=data.get("refresh_token"),
                chain=dict(data.get("chain") or {}),
                client_id=data.get("client_id", ""),
                user_properties=data.get("user_properties", "{}"),
                xuid=data.get("xuid", ""))
        except (KeyError, TypeError) as e:
            raise ValueError(f"invalid credential data: {e}")

    def __repr__(self) -> str:
        return f"<Credential {self.provider} {self.username} ({self.uuid}), expires at: {self.expires_at}>"


class AuthProvider:
    """Base class of authentication providers.
    """

    name: str

    def refresh(self, credential: Credential) -> Credential:
        """Obtain a fresh credential from the given one.
        """
        raise NotImplementedError

    def revalidate(self, credential: Credential) -> Optional[Credential]:
        """Optionally check with the provider that a credential near its expiry is still
        valid, returning it with a new expiry. None means that a refresh is needed.
        """
        return None

    def logout(self, credential: Credential) -> None:
        """Invalidate the credential on the provider's side, if supported.
        """


class YggdrasilAuth(AuthProvider):
    """Yggdrasil authentication (deprecated), also known as "Mojang authentication". The
    server gives no expiry for its tokens, so a fixed lifetime is assumed.
    """

    name = Credential.LEGACY

    def __init__(self,
        client_token: Optional[str] = None, *,
        endpoints: Optional[Endpoints] = None,
        token_lifetime: timedelta = timedelta(days=1),
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.client_token = str(uuid4()) if client_token is None else client_token
        self.endpoints = Endpoints() if endpoints is None else endpoints
        self.token_lifetime = token_lifetime
        self.clock = clock

    def authenticate(self, username: str, password: str) -> Credential:
        res = self.request("authenticate", {
            "agent": {
                "name": "Minecraft",
                "version": 1
            },
            "username": username,
            "password": password,
            "clientToken": self.client_token,
            "requestUser": True
        })
        try:
            profile = res["selectedProfile"]
            return Credential(
                self.name,
                profile["id"],
                profile["name"],
                res["accessToken"],
                self.clock() + self.token_lifetime,
                client_id=res.get("clientToken", self.client_token),
                user_properties=self.format_user_properties(res.get("user")))
        except (KeyError, TypeError):
            raise AuthProtocolError("authenticate", json.dumps(res))

    def validate(self, access_token: str) -> bool:
        """Check if the access token is still valid.
        """
        try:
            self.request("validate", {
                "accessToken": access_token,
                "clientToken": self.client_token
            }, expect_body=False)
            return True
        except AuthRejectedError:
            return False

    def invalidate(self, access_token: str) -> None:
        """Invalidate the access token, invalidating an already invalid token is not an
        error.
        """
        try:
            self.request("invalidate", {
                "accessToken": access_token,
                "clientToken": self.client_token
            }, expect_body=False)
        except AuthRejectedError as error:
            logger.debug("Ignoring invalidate rejection: %s", error)

    def refresh(self, credential: Credential) -> Credential:
        """Refresh the credential, only its access token is replaced.
        """
        res = self.request("refresh", {
            "accessToken": credential.access_token,
            "clientToken": credential.client_id or self.client_token,
            "requestUser": True
        })
        access_token = res.get("accessToken")
        if not isinstance(access_token, str):
            raise AuthProtocolError("refresh", json.dumps(res))
        return credential.with_tokens(access_token, self.clock() + self.token_lifetime)

    def revalidate(self, credential: Credential) -> Optional[Credential]:
        if self.validate(credential.access_token):
            return credential.with_tokens(credential.access_token, self.clock() + self.token_lifetime)
        return None

    def logout(self, credential: Credential) -> None:
        self.invalidate(credential.access_token)

    def request(self, req: str, payload: dict, *, expect_body: bool = True) -> dict:
        try:
            res = http_request("POST", f"{self.endpoints.yggdrasil}{req}",
                data=json.dumps(payload).encode("utf-8"),
                accept="application/json",
                content_type="application/json")
        except HttpError as error:
            raise _rejected_error(req, error)

        if not expect_body:
            return {}

        return _json_body(req, res)

    @staticmethod
    def format_user_properties(user: Any) -> str:
        """Format the properties of a user as the JSON object expected by old versions,
        mapping each property name to the list of its values.
        """
        props: Dict[str, list] = {}
        if isinstance(user, dict):
            for prop in user.get("properties") or []:
                if isinstance(prop, dict) and "name" in prop:
                    props.setdefault(prop["name"], []).append(prop.get("value", ""))
        return json.dumps(props)


class MicrosoftAuth(AuthProvider):
    """Microsoft authentication for Minecraft. It involves a chain of exchanges with the
    Microsoft OAuth service, Xbox Live, its security token service (XSTS) and finally
    Minecraft services.
    """

    name = Credential.MICROSOFT

    # XSTS error codes requiring an action on the account itself.
    XERR_REASONS = {
        2148916233: "no_xbox_account",
        2148916235: "region_unavailable",
        2148916236: "adult_verification",
        2148916237: "adult_verification",
        2148916238: "child_account",
    }

    def __init__(self,
        client_id: str = MS_CLIENT_ID,
        redirect_uri: str = MS_REDIRECT_URI, *,
        endpoints: Optional[Endpoints] = None,
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.endpoints = Endpoints() if endpoints is None else endpoints
        self.clock = clock

    def get_authentication_url(self, *, state: Optional[str] = None, login_hint: Optional[str] = None) -> str:
        """Build the URL of the interactive login page, its redirect gives the code to
        pass to `login`.
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": MS_SCOPE,
        }
        if state is not None:
            params["state"] = state
        if login_hint is not None:
            params["login_hint"] = login_hint
        return f"{self.endpoints.ms_authorize}?{url_parse.urlencode(params)}"

    def login(self, code: str, *, check_ownership: bool = True) -> Credential:
        """Complete the login from an authorization code.

        :raises AuthError: If any step of the chain fails.
        """
        return self._authenticate({
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "code": code,
            "grant_type": "authorization_code",
            "scope": MS_SCOPE
        }, check_ownership)

    def refresh(self, credential: Credential) -> Credential:
        if not credential.refresh_token:
            raise OutdatedTokenError("oauth", "no_refresh_token", "the credential has no refresh token")
        return self._authenticate({
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "refresh_token": credential.refresh_token,
            "grant_type": "refresh_token",
            "scope": MS_SCOPE
        }, False)

    def _authenticate(self, oauth_payload: dict, check_ownership: bool) -> Credential:

        ms_access_token, ms_refresh_token = self.exchange_oauth(oauth_payload)
        xbl_token, xbl_user_hash = self.authenticate_xbl(ms_access_token)
        xsts_token, xsts_user_hash = self.authenticate_xsts(xbl_token)

        if xbl_user_hash != xsts_user_hash:
            raise AuthProtocolError("xsts", "inconsistent user hash")

        mc_access_token, expires_in = self.authenticate_game(xbl_user_hash, xsts_token)
        expires_at = self.clock() + timedelta(seconds=expires_in)

        if check_ownership and not self.verify_ownership(mc_access_token):
            raise DoesNotOwnGameError("entitlements", "not_owned", "the account does not own the game")

        profile = self.fetch_profile(mc_access_token)

        try:
            xuid = str(decode_jwt_payload(mc_access_token).get("xuid", ""))
        except ValueError:
            xuid = ""

        logger.debug("Authenticated Microsoft account %s", profile["name"])

        return Credential(
            self.name,
            profile["id"],
            profile["name"],
            mc_access_token,
            expires_at,
            refresh_token=ms_refresh_token,
            chain={
                "ms_access_token": ms_access_token,
                "xbl_token": xbl_token,
                "xsts_token": xsts_token,
                "user_hash": xbl_user_hash
            },
            client_id=self.client_id,
            xuid=xuid)

    def exchange_oauth(self, payload: dict) -> Tuple[str, str]:
        """Exchange an authorization code or a refresh token at the OAuth token endpoint.

        :return: The Microsoft access token and refresh token.
        """
        try:
            res = self._post("oauth", self.endpoints.ms_token, payload, url_encoded=True)
        except AuthRejectedError as error:
            if error.code in ("invalid_grant", "interaction_required"):
                raise OutdatedTokenError("oauth", error.code, error.message)
            raise
        return _get_str(res, "oauth", "access_token"), _get_str(res, "oauth", "refresh_token")

    def authenticate_xbl(self, ms_access_token: str) -> Tuple[str, str]:
        """Authenticate with Xbox Live.

        :return: The XBL token and the user hash.
        """
        res = self._post("xbl", self.endpoints.xbl_auth, {
            "Properties": {
                "AuthMethod": "RPS",
                "SiteName": "user.auth.xboxlive.com",
                "RpsTicket": f"d={ms_access_token}"
            },
            "RelyingParty": "http://auth.xboxlive.com",
            "TokenType": "JWT"
        })
        return _get_str(res, "xbl", "Token"), _get_user_hash(res, "xbl")

    def authenticate_xsts(self, xbl_token: str) -> Tuple[str, str]:
        """Authorize the XBL token with XSTS for Minecraft services.

        :return: The XSTS token and the user hash.
        :raises AccountRequiredError: If the account needs an action to play.
        :raises OutdatedTokenError: For any other unauthorized response.
        """
        try:
            res = self._post("xsts", self.endpoints.xsts_auth, {
                "Properties": {
                    "SandboxId": "RETAIL",
                    "UserTokens": [xbl_token]
                },
                "RelyingParty": "rp://api.minecraftservices.com/",
                "TokenType": "JWT"
            })
        except AuthRejectedError as error:
            if error.status == 401:
                body = error.body if isinstance(error.body, dict) else {}
                xerr = body.get("XErr")
                reason = self.XERR_REASONS.get(xerr) if isinstance(xerr, int) else None
                if reason is not None:
                    raise AccountRequiredError("xsts", str(xerr), body.get("Message") or reason, reason, body.get("Redirect"))
                raise OutdatedTokenError("xsts", error.code, error.message)
            raise
        return _get_str(res, "xsts", "Token"), _get_user_hash(res, "xsts")

    def authenticate_game(self, user_hash: str, xsts_token: str) -> Tuple[str, int]:
        """Exchange the XSTS token with Minecraft services.

        :return: The game access token and its lifetime in seconds.
        """
        res = self._post("game", f"{self.endpoints.mc_services}authentication/login_with_xbox", {
            "identityToken": f"XBL3.0 x={user_hash};{xsts_token}"
        })
        expires_in = res.get("expires_in", 86400)
        if not isinstance(expires_in, int):
            raise AuthProtocolError("game", json.dumps(res))
        return _get_str(res, "game", "access_token"), expires_in

    def verify_ownership(self, access_token: str) -> bool:
        """Check that the account owns the game, both the product and the game
        entitlements must be present.
        """
        res = self._get("entitlements", f"{self.endpoints.mc_services}entitlements/mcstore", access_token)
        items = res.get("items")
        if not isinstance(items, list):
            return False
        names = {item.get("name") for item in items if isinstance(item, dict)}
        return "product_minecraft" in names and "game_minecraft" in names

    def fetch_profile(self, access_token: str) -> dict:
        """Fetch the game profile of the account, containing its id and name.

        :raises DoesNotOwnGameError: If the account has no profile.
        """
        try:
            res = self._get("profile", f"{self.endpoints.mc_services}minecraft/profile", access_token)
        except AuthRejectedError as error:
            if error.status == 404:
                raise DoesNotOwnGameError("profile", error.code, error.message)
            elif error.status == 401:
                raise OutdatedTokenError("profile", error.code, error.message)
            raise
        if not isinstance(res.get("id"), str) or not isinstance(res.get("name"), str):
            raise AuthProtocolError("profile", json.dumps(res))
        return res

    def _post(self, step: str, url: str, payload: dict, *, url_encoded: bool = False) -> dict:
        data = (url_parse.urlencode(payload) if url_encoded else json.dumps(payload)).encode("utf-8")
        content_type = "application/x-www-form-urlencoded" if url_encoded else "application/json"
        try:
            res = http_request("POST", url, data=data, content_type=content_type, accept="application/json")
        except HttpError as error:
            raise _rejected_error(step, error)
        return _json_body(step, res)

    def _get(self, step: str, url: str, bearer: str) -> dict:
        try:
            res = http_request("GET", url, headers={"Authorization": f"Bearer {bearer}"}, accept="application/json")
        except HttpError as error:
            raise _rejected_error(step, error)
        return _json_body(step, res)


class CredentialBroker:
    """Route credentials to their provider and keep them fresh. Refreshes of a single
    (provider, user) are serialized, a caller waiting for a refresh done by another one
    reuses its result instead of refreshing again. Nothing is retried automatically.
    """

    def __init__(self,
        providers: Dict[str, AuthProvider], *,
        margin: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.providers = providers
        self.margin = margin
        self.clock = clock
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._locks_lock = threading.Lock()
        self._latest: Dict[Tuple[str, str], Credential] = {}

    def provider(self, credential: Credential) -> AuthProvider:
        provider = self.providers.get(credential.provider)
        if provider is None:
            raise ValueError(f"unsupported credential provider '{credential.provider}'")
        return provider

    def _lock(self, key: Tuple[str, str]) -> threading.Lock:
        with self._locks_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def ensure_fresh(self, credential: Credential) -> Credential:
        """Return a credential that will not expire within the margin, refreshing the
        given one only if needed.
        """

        if not credential.is_expired(self.margin, self.clock()):
            return credential

        with self._lock(credential.key):

            latest = self._latest.get(credential.key)
            if latest is not None and not latest.is_expired(self.margin, self.clock()):
                return latest

            provider = self.provider(credential)
            fresh = provider.revalidate(credential)
            if fresh is None:
                logger.debug("Refreshing %s credential of %s", credential.provider, credential.username)
                fresh = provider.refresh(credential)

            self._latest[credential.key] = fresh
            return fresh

    def refresh(self, credential: Credential) -> Credential:
        """Refresh the credential, even if not expired.
        """
        with self._lock(credential.key):
            fresh = self.provider(credential).refresh(credential)
            self._latest[credential.key] = fresh
            return fresh

    def logout(self, credential: Credential) -> None:
        """Invalidate the credential if the provider supports it and forget it.
        """
        with self._lock(credential.key):
            self._latest.pop(credential.key, None)
            self.provider(credential).logout(credential)


def _json_body(step: str, res: HttpResponse) -> dict:
    try:
        body = res.json()
    except ValueError:
        raise AuthProtocolError(step, res.data.decode("utf-8", "replace"))
    if not isinstance(body, dict):
        raise AuthProtocolError(step, res.data.decode("utf-8", "replace"))
    return body


def _rejected_error(step: str, error: HttpError) -> "AuthError":
    """Convert an HTTP error into a network or rejection error.
    """

    if error.is_network():
        return AuthNetworkError(step, error.reason)

    try:
        body = error.res.json()
    except ValueError:
        body = None

    code = str(error.res.status)
    message = ""
    if isinstance(body, dict):
        code = str(body.get("error") or body.get("errorType") or body.get("XErr") or code)
        message = str(body.get("errorMessage") or body.get("error_description") or body.get("Message") or "")

    return AuthRejectedError(step, code, message, status=error.res.status, body=body)


def _get_str(res: dict, step: str, key: str) -> str:
    value = res.get(key)
    if not isinstance(value, str):
        raise AuthProtocolError(step, json.dumps(res))
    return value


def _get_user_hash(res: dict, step: str) -> str:
    try:
        uhs = res["DisplayClaims"]["xui"][0]["uhs"]
    except (KeyError, IndexError, TypeError):
        raise AuthProtocolError(step, json.dumps(res))
    if not isinstance(uhs, str):
        raise AuthProtocolError(step, json.dumps(res))
    return uhs


class AuthError(Exception):
    """Base class of authentication errors, the step of the authentication that failed
    is given.
    """
    def __init__(self, step: str) -> None:
        self.step = step

    def __str__(self) -> str:
        return self.step

class AuthNetworkError(AuthError):
    """Raised when a provider cannot be reached.
    """
    def __init__(self, step: str, cause: Any) -> None:
        super().__init__(step)
        self.cause = cause

    def __str__(self) -> str:
        return f"{self.step}: {self.cause}"

class AuthRejectedError(AuthError):
    """Raised when a provider rejects a request, with the code and message it gave.
    """
    def __init__(self, step: str, code: str, message: str, *, status: int = 0, body: Any = None) -> None:
        super().__init__(step)
        self.code = code
        self.message = message
        self.status = status
        self.body = body

    def __str__(self) -> str:
        return f"{self.step}: {self.code} {self.message!r}"

class AccountRequiredError(AuthRejectedError):
    """Raised when the account needs an action from its owner before being able to
    play (creating an Xbox account, age verification...). The reason is one of the
    values of `MicrosoftAuth.XERR_REASONS` and the redirect may point to the page to
    take the action.
    """
    def __init__(self, step: str, code: str, message: str, reason: str, redirect: Optional[str] = None) -> None:
        super().__init__(step, code, message, status=401)
        self.reason = reason
        self.redirect = redirect

class OutdatedTokenError(AuthRejectedError):
    """Raised when the user needs to authenticate again.
    """

class DoesNotOwnGameError(AuthRejectedError):
    """Raised when the account does not own the game.
    """

class AuthProtocolError(AuthError):
    """Raised when a successful response has an unexpected shape, the raw body is given
    for diagnostics.
    """
    def __init__(self, step: str, raw_body: str) -> None:
        super().__init__(step)
        self.raw_body = raw_body

    def __str__(self) -> str:
        return f"{self.step}: unexpected response {self.raw_body!r}"
