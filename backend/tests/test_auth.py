"""
API tests for the patient auth endpoints.
"""
import pytest
from httpx import AsyncClient

from core.rate_limit import limiter
from services.otp_service import OtpPolicy

API = "/api/patient-auth"

pytestmark = pytest.mark.api


async def _verify_phone(client: AsyncClient, sms_adapter, phone: str) -> str:
    """Run send + verify and return the code that was used."""
    response = await client.post(f"{API}/send-otp", json={"phone": phone})
    assert response.status_code == 200
    code = sms_adapter.last_code(phone)
    response = await client.post(f"{API}/verify-otp", json={"phone": phone, "otp": code})
    assert response.status_code == 200
    return code


async def _signup(client: AsyncClient, sms_adapter, signup_data: dict) -> dict:
    code = await _verify_phone(client, sms_adapter, signup_data["phone"])
    response = await client.post(f"{API}/signup", json={**signup_data, "otp": code})
    assert response.status_code == 201
    return response.json()


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestSendOtpEndpoint:
    """POST /send-otp"""

    @pytest.mark.asyncio
    async def test_send_otp_success(self, async_client: AsyncClient, sms_adapter, phone):
        response = await async_client.post(f"{API}/send-otp", json={"phone": phone})

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "OTP sent successfully to your phone"}
        assert response.headers["cache-control"].startswith("no-store")
        assert sms_adapter.sent[0][0] == phone

    @pytest.mark.asyncio
    async def test_send_otp_normalizes_formatting(self, async_client: AsyncClient, sms_adapter):
        response = await async_client.post(f"{API}/send-otp", json={"phone": "98765-43210"})

        assert response.status_code == 200
        assert sms_adapter.sent[0][0] == "9876543210"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_phone", ["12345", "5876543210", "98765432101", "phone"])
    async def test_send_otp_invalid_phone(self, async_client: AsyncClient, sms_adapter, bad_phone):
        response = await async_client.post(f"{API}/send-otp", json={"phone": bad_phone})

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Invalid phone number format"}
        assert sms_adapter.sent == []

    @pytest.mark.asyncio
    async def test_non_ascii_digits_do_not_open_a_new_phone_key(self, async_client: AsyncClient, sms_adapter, phone):
        for _ in range(3):
            assert (await async_client.post(f"{API}/send-otp", json={"phone": phone})).status_code == 200

        for lookalike in ["9٨٧٦٥٤٣٢١٠", "9८७६५४३२१०", "98٧٦٥٤٣٢١٠"]:
            response = await async_client.post(f"{API}/send-otp", json={"phone": lookalike})
            assert response.status_code == 400
            assert response.json() == {"success": False, "message": "Invalid phone number format"}

        assert len(sms_adapter.sent) == 3

    @pytest.mark.asyncio
    async def test_send_otp_missing_phone(self, async_client: AsyncClient):
        response = await async_client.post(f"{API}/send-otp", json={})

        assert response.status_code == 400
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_fourth_send_returns_429(self, async_client: AsyncClient, phone):
        for _ in range(3):
            assert (await async_client.post(f"{API}/send-otp", json={"phone": phone})).status_code == 200

        response = await async_client.post(f"{API}/send-otp", json={"phone": phone})

        assert response.status_code == 429
        data = response.json()
        assert data["success"] is False
        assert "Maximum 3 OTP requests per hour" in data["message"]
        assert "lockedUntil" not in data

    @pytest.mark.asyncio
    async def test_locked_phone_returns_lock_expiry(self, async_client: AsyncClient, clock, phone):
        await async_client.post(f"{API}/send-otp", json={"phone": phone})
        for _ in range(5):
            response = await async_client.post(f"{API}/verify-otp", json={"phone": phone, "otp": "000000"})
            assert response.status_code == 400

        response = await async_client.post(f"{API}/send-otp", json={"phone": phone})

        assert response.status_code == 429
        data = response.json()
        assert data["success"] is False
        assert data["message"] == "Too many attempts. Please try again after 10:30:00 UTC"
        assert data["lockedUntil"] == "2026-01-15T10:30:00Z"

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, async_client: AsyncClient, phone):
        response = await async_client.post(
            f"{API}/send-otp", json={"phone": phone}, headers={"X-Request-ID": "req-123"}
        )

        assert response.headers["x-request-id"] == "req-123"


class TestVerifyOtpEndpoint:
    """POST /verify-otp"""

    @pytest.mark.asyncio
    async def test_verify_success(self, async_client: AsyncClient, sms_adapter, phone):
        await async_client.post(f"{API}/send-otp", json={"phone": phone})

        response = await async_client.post(
            f"{API}/verify-otp", json={"phone": phone, "otp": sms_adapter.last_code(phone)}
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "OTP verified successfully"}

    @pytest.mark.asyncio
    async def test_verify_wrong_code(self, async_client: AsyncClient, phone):
        await async_client.post(f"{API}/send-otp", json={"phone": phone})

        response = await async_client.post(f"{API}/verify-otp", json={"phone": phone, "otp": "000000"})

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Invalid OTP. 4 attempts remaining."}

    @pytest.mark.asyncio
    async def test_verify_without_send(self, async_client: AsyncClient, phone):
        response = await async_client.post(f"{API}/verify-otp", json={"phone": phone, "otp": "123456"})

        assert response.status_code == 400
        assert response.json()["message"] == "OTP expired or not found. Please request a new OTP."

    @pytest.mark.asyncio
    async def test_verify_malformed_code(self, async_client: AsyncClient, phone):
        response = await async_client.post(f"{API}/verify-otp", json={"phone": phone, "otp": "12ab"})

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "OTP must be exactly 6 digits"}


class TestConfiguredOtpLength:
    """Codes shorter than six digits when the policy says so."""

    @pytest.fixture
    def otp_policy(self):
        return OtpPolicy(hash_rounds=4, otp_length=4)

    @pytest.mark.asyncio
    async def test_four_digit_code_verifies_and_signs_up(self, async_client: AsyncClient, sms_adapter, signup_data):
        code = await _verify_phone(async_client, sms_adapter, signup_data["phone"])
        assert len(code) == 4

        response = await async_client.post(f"{API}/signup", json={**signup_data, "otp": code})

        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_six_digit_code_is_rejected(self, async_client: AsyncClient, phone):
        await async_client.post(f"{API}/send-otp", json={"phone": phone})

        response = await async_client.post(f"{API}/verify-otp", json={"phone": phone, "otp": "123456"})

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "OTP must be exactly 4 digits"}


class TestSignupEndpoint:
    """POST /signup"""

    @pytest.mark.asyncio
    async def test_signup_success(self, async_client: AsyncClient, sms_adapter, signup_data):
        data = await _signup(async_client, sms_adapter, signup_data)

        assert data["success"] is True
        assert data["message"] == "Account created successfully"
        assert data["accessToken"]
        assert data["refreshToken"]
        patient = data["patient"]
        assert patient["phone"] == signup_data["phone"]
        assert patient["fullName"] == signup_data["fullName"]
        assert patient["accountType"] == "APP_ACCOUNT"
        assert "pin" not in patient and "hashedPin" not in patient

    @pytest.mark.asyncio
    async def test_signup_duplicate_phone(self, async_client: AsyncClient, sms_adapter, signup_data):
        first = await _signup(async_client, sms_adapter, signup_data)
        assert first["success"]

        code = await _verify_phone(async_client, sms_adapter, signup_data["phone"])
        response = await async_client.post(f"{API}/signup", json={**signup_data, "otp": code})

        assert response.status_code == 409
        assert response.json() == {
            "success": False,
            "message": "An account with this phone number already exists. Please login instead.",
        }

    @pytest.mark.asyncio
    async def test_signup_without_verification(self, async_client: AsyncClient, sms_adapter, signup_data):
        await async_client.post(f"{API}/send-otp", json={"phone": signup_data["phone"]})
        code = sms_adapter.last_code(signup_data["phone"])

        response = await async_client.post(f"{API}/signup", json={**signup_data, "otp": code})

        assert response.status_code == 400
        assert response.json()["message"] == "OTP verification expired. Please verify OTP again."

    @pytest.mark.asyncio
    async def test_signup_after_freshness_window(self, async_client: AsyncClient, sms_adapter, clock, signup_data):
        code = await _verify_phone(async_client, sms_adapter, signup_data["phone"])
        clock.advance(minutes=11)

        response = await async_client.post(f"{API}/signup", json={**signup_data, "otp": code})

        assert response.status_code == 400
        assert response.json()["message"] == "OTP verification expired. Please verify OTP again."

    @pytest.mark.asyncio
    async def test_signup_with_different_code(self, async_client: AsyncClient, sms_adapter, signup_data):
        await _verify_phone(async_client, sms_adapter, signup_data["phone"])

        response = await async_client.post(f"{API}/signup", json={**signup_data, "otp": "000000"})

        assert response.status_code == 400
        assert response.json()["message"] == "Invalid OTP. Please try again."

    @pytest.mark.asyncio
    async def test_signup_rejects_short_pin(self, async_client: AsyncClient, sms_adapter, signup_data):
        code = await _verify_phone(async_client, sms_adapter, signup_data["phone"])

        response = await async_client.post(f"{API}/signup", json={**signup_data, "otp": code, "pin": "1234"})

        assert response.status_code == 400
        assert response.json()["message"] == "PIN must be exactly 6 digits"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pin", ["١٢٣٤٥٦", "१२३४५६", "123456\n"])
    async def test_signup_rejects_lookalike_pins(self, async_client: AsyncClient, sms_adapter, signup_data, pin):
        code = await _verify_phone(async_client, sms_adapter, signup_data["phone"])

        response = await async_client.post(f"{API}/signup", json={**signup_data, "otp": code, "pin": pin})

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "PIN must be exactly 6 digits"}


class TestLoginEndpoint:
    """POST /login"""

    @pytest.mark.asyncio
    async def test_login_success(self, async_client: AsyncClient, sms_adapter, signup_data):
        await _signup(async_client, sms_adapter, signup_data)

        response = await async_client.post(
            f"{API}/login", json={"phone": signup_data["phone"], "pin": signup_data["pin"]}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Login successful"
        assert data["patient"]["phone"] == signup_data["phone"]
        assert data["accessToken"] and data["refreshToken"]

    @pytest.mark.asyncio
    async def test_login_wrong_pin(self, async_client: AsyncClient, sms_adapter, signup_data):
        await _signup(async_client, sms_adapter, signup_data)

        response = await async_client.post(f"{API}/login", json={"phone": signup_data["phone"], "pin": "000000"})

        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Invalid PIN"}

    @pytest.mark.asyncio
    async def test_login_unknown_phone(self, async_client: AsyncClient, phone):
        response = await async_client.post(f"{API}/login", json={"phone": phone, "pin": "482913"})

        assert response.status_code == 404
        assert response.json()["message"] == "Account not found. Please sign up first."


class TestRefreshTokenEndpoint:
    """POST /refresh-token"""

    @pytest.mark.asyncio
    async def test_refresh_rotates_token(self, async_client: AsyncClient, sms_adapter, signup_data):
        tokens = await _signup(async_client, sms_adapter, signup_data)

        response = await async_client.post(f"{API}/refresh-token", json={"refreshToken": tokens["refreshToken"]})

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Token refreshed successfully"
        assert data["refreshToken"] != tokens["refreshToken"]

        reused = await async_client.post(f"{API}/refresh-token", json={"refreshToken": tokens["refreshToken"]})
        assert reused.status_code == 401
        assert reused.json()["message"] == "Invalid refresh token"

    @pytest.mark.asyncio
    async def test_refresh_rejects_access_token(self, async_client: AsyncClient, sms_adapter, signup_data):
        tokens = await _signup(async_client, sms_adapter, signup_data)

        response = await async_client.post(f"{API}/refresh-token", json={"refreshToken": tokens["accessToken"]})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_refresh_rejects_garbage(self, async_client: AsyncClient):
        response = await async_client.post(f"{API}/refresh-token", json={"refreshToken": "not-a-jwt"})

        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Invalid refresh token"}


class TestProfileEndpoints:
    """GET/PUT /profile and PUT /change-pin"""

    @pytest.mark.asyncio
    async def test_profile_requires_token(self, async_client: AsyncClient):
        response = await async_client.get(f"{API}/profile")

        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Not authenticated"}

    @pytest.mark.asyncio
    async def test_profile_rejects_bad_token(self, async_client: AsyncClient):
        response = await async_client.get(f"{API}/profile", headers=_bearer("not-a-jwt"))

        assert response.status_code == 401
        assert response.json()["message"] == "Could not validate credentials"

    @pytest.mark.asyncio
    async def test_get_profile(self, async_client: AsyncClient, sms_adapter, signup_data):
        tokens = await _signup(async_client, sms_adapter, signup_data)

        response = await async_client.get(f"{API}/profile", headers=_bearer(tokens["accessToken"]))

        assert response.status_code == 200
        patient = response.json()["patient"]
        assert patient["id"] == tokens["patient"]["id"]
        assert patient["phoneVerified"] is True
        assert patient["status"] == "ACTIVE"
        assert patient["lastLoginAt"] is not None

    @pytest.mark.asyncio
    async def test_update_profile(self, async_client: AsyncClient, sms_adapter, signup_data):
        tokens = await _signup(async_client, sms_adapter, signup_data)

        response = await async_client.put(
            f"{API}/profile",
            json={"fullName": "  Asha Rao ", "age": 41},
            headers=_bearer(tokens["accessToken"]),
        )

        assert response.status_code == 200
        patient = response.json()["patient"]
        assert patient["fullName"] == "Asha Rao"
        assert patient["age"] == 41
        assert patient["gender"] == signup_data["gender"]

    @pytest.mark.asyncio
    async def test_change_pin(self, async_client: AsyncClient, sms_adapter, signup_data):
        tokens = await _signup(async_client, sms_adapter, signup_data)
        headers = _bearer(tokens["accessToken"])

        wrong = await async_client.put(
            f"{API}/change-pin", json={"currentPin": "000000", "newPin": "135790"}, headers=headers
        )
        assert wrong.status_code == 401
        assert wrong.json()["message"] == "Current PIN is incorrect"

        response = await async_client.put(
            f"{API}/change-pin", json={"currentPin": signup_data["pin"], "newPin": "135790"}, headers=headers
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "PIN changed successfully"}

        phone = signup_data["phone"]
        assert (await async_client.post(f"{API}/login", json={"phone": phone, "pin": "135790"})).status_code == 200
        assert (await async_client.post(f"{API}/login", json={"phone": phone, "pin": signup_data["pin"]})).status_code == 401


class TestIpRateLimit:
    """Per-IP limits in front of the per-phone OTP limits."""

    @pytest.fixture
    def ip_limits(self):
        limiter.reset()
        limiter.enabled = True
        yield limiter
        limiter.enabled = False
        limiter.reset()

    @pytest.mark.asyncio
    async def test_send_otp_ip_limit(self, async_client: AsyncClient, ip_limits):
        phones = [f"98765432{i:02d}" for i in range(6)]
        for phone in phones[:5]:
            response = await async_client.post(f"{API}/send-otp", json={"phone": phone})
            assert response.status_code == 200

        response = await async_client.post(f"{API}/send-otp", json={"phone": phones[5]})

        assert response.status_code == 429
        assert response.json() == {
            "success": False,
            "message": "Too many requests from this IP. Please try again later.",
        }

    @pytest.mark.asyncio
    async def test_health_is_exempt(self, async_client: AsyncClient, ip_limits):
        for _ in range(3):
            response = await async_client.get("/health")
            assert response.status_code == 200
        assert response.json()["status"] == "healthy"
