# src/tiris_portal/auth_client.py

import httpx

from .api_client import BackendClient
from .errors import BackendError, ErrorKind, classify_error
from .session_data import (
    AuthProvider,
    AuthResponse,
    BackendUser,
    LoginResponse,
    RefreshResponse,
)


class AuthBackendClient(BackendClient):
    """
    Stateless wrapper around the TIRIS auth API.
    Nothing here touches stored tokens; callers pass tokens in and persist what comes back.
    """

    async def initiate_login(self, provider: AuthProvider, redirect_uri: str) -> LoginResponse:
        data = await self._request(
            "POST",
            "/auth/login",
            json={"provider": provider.value, "redirect_uri": redirect_uri},
        )
        login = self._parse(LoginResponse, data, "POST /auth/login")
        print(f"AUTH_CLIENT: initiate_login - Auth URL received for {provider.value}. State: {login.state}")
        return login

    async def handle_callback(
            self,
            provider: AuthProvider,
            code: str,
            state: str,
            redirect_uri: str,
    ) -> AuthResponse:
        print(f"AUTH_CLIENT: handle_callback - Exchanging code for {provider.value}. Redirect URI: {redirect_uri}")
        data = await self._request(
            "POST",
            "/auth/callback",
            json={
                "provider": provider.value,
                "code": code,
                "state": state,
                "redirect_uri": redirect_uri,
            },
        )
        return self._parse(AuthResponse, data, "POST /auth/callback")

    async def get_current_user(self, token: str) -> BackendUser:
        data = await self._request("GET", "/users/me", token=token)
        return self._parse(BackendUser, data, "GET /users/me")

    async def refresh_token(self, refresh_token: str) -> RefreshResponse:
        data = await self._request("POST", "/auth/refresh", json={"refresh_token": refresh_token})
        return self._parse(RefreshResponse, data, "POST /auth/refresh")

    async def sign_up(self, email: str, password: str, full_name: str) -> AuthResponse:
        data = await self._request(
            "POST",
            "/auth/signup",
            json={"email": email, "password": password, "full_name": full_name},
        )
        return self._parse(AuthResponse, data, "POST /auth/signup")

    async def sign_in(self, email: str, password: str) -> AuthResponse:
        data = await self._request("POST", "/auth/signin", json={"email": email, "password": password})
        return self._parse(AuthResponse, data, "POST /auth/signin")

    async def logout(self, token: str) -> None:
        # The backend may answer with an empty body; only transport errors and HTTP errors count.
        try:
            response = await self._http.post("/auth/logout", headers={"Authorization": f"Bearer {token}"})
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise BackendError(
                classify_error(e.response.status_code),
                f"Logout failed: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise BackendError(ErrorKind.NETWORK, f"Logout request failed: {str(e)}") from e
