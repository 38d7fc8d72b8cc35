"""
Tests for Roblox account verification.
"""

import re
from datetime import datetime, timedelta

import httpx
import pytest
import respx

from auth import get_session_member
from config import config
from database import get_db, reset_db
from errors import CodeMismatch, Expired, InvalidInput, NoChallenge, UpstreamUnavailable
from members import find_member, upsert_member, adjust_counters
from verification import (
    generate_verification_code, is_code_expired, start_verification,
    get_challenge, check_verification
)

PROFILE_URL = f"{config.ROBLOX_USERS_URL}/users/12345"


@pytest.fixture(autouse=True)
def setup_db():
    """Reset database before each test."""
    reset_db()
    yield


def mock_profile(description, name="Pilot", display_name="Ace Pilot"):
    return respx.get(PROFILE_URL).mock(return_value=httpx.Response(200, json={
        "id": 12345,
        "name": name,
        "displayName": display_name,
        "description": description,
    }))


def age_challenge(roblox_id, minutes):
    created = (datetime.utcnow() - timedelta(minutes=minutes)).isoformat()
    with get_db() as conn:
        conn.execute("UPDATE verification_codes SET created_at = ? WHERE roblox_id = ?", (created, roblox_id))


class TestCodeGeneration:
    """Test verification code format."""

    def test_code_format(self):
        code = generate_verification_code()
        assert re.fullmatch(r"USAFE-[A-Z0-9]{6}", code)

    def test_codes_differ(self):
        codes = {generate_verification_code() for _ in range(50)}
        assert len(codes) > 1

    def test_expiry_boundary(self):
        now = datetime(2026, 1, 1, 12, 0, 0)
        assert is_code_expired((now - timedelta(minutes=9)).isoformat(), now) is False
        assert is_code_expired((now - timedelta(minutes=10)).isoformat(), now) is False
        assert is_code_expired((now - timedelta(minutes=11)).isoformat(), now) is True


class TestStartVerification:
    """Test challenge issuance."""

    def test_returns_code_and_expiry(self):
        result = start_verification("12345")

        assert result["code"].startswith("USAFE-")
        expires = datetime.fromisoformat(result["expires_at"])
        assert timedelta(minutes=9) < expires - datetime.utcnow() <= timedelta(minutes=10)

    def test_reissue_replaces_code(self):
        """Test a second start leaves exactly one active code: the new one."""
        start_verification("12345")
        second = start_verification("12345")

        with get_db() as conn:
            rows = conn.execute("SELECT code FROM verification_codes WHERE roblox_id = '12345'").fetchall()
        assert len(rows) == 1
        assert rows[0]["code"] == second["code"]

    def test_empty_roblox_id_rejected(self):
        with pytest.raises(InvalidInput):
            start_verification("")

    def test_does_not_create_member(self):
        start_verification("12345")
        assert find_member("12345") is None


class TestCheckVerification:
    """Test the profile description check."""

    @pytest.mark.asyncio
    async def test_no_challenge(self):
        with pytest.raises(NoChallenge):
            await check_verification("12345")

    @pytest.mark.asyncio
    @respx.mock
    async def test_success_creates_member_and_consumes_code(self):
        code = start_verification("12345")["code"]
        mock_profile(f"Joining USAFFE {code} o7")

        result = await check_verification("12345")

        assert result.member["roblox_id"] == "12345"
        assert result.member["username"] == "Pilot"
        assert result.member["display_name"] == "Ace Pilot"
        assert result.member["rank"] == "Unassigned"
        assert get_challenge("12345") is None
        assert get_session_member(result.token)["id"] == result.member["id"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_success_keeps_existing_progress(self):
        member = upsert_member("12345", "OldName", "Old")
        adjust_counters(member["id"], {"points": 4})
        code = start_verification("12345")["code"]
        mock_profile(code)

        result = await check_verification("12345")

        assert result.member["id"] == member["id"]
        assert result.member["username"] == "Pilot"
        assert result.member["points"] == 4

    @pytest.mark.asyncio
    @respx.mock
    async def test_code_reused_after_success_fails(self):
        code = start_verification("12345")["code"]
        mock_profile(code)

        await check_verification("12345")

        with pytest.raises(NoChallenge):
            await check_verification("12345")

    @pytest.mark.asyncio
    @respx.mock
    async def test_mismatch_keeps_challenge(self):
        """Test a failed check can be retried with the same code."""
        code = start_verification("12345")["code"]
        mock_profile("nothing to see here")

        with pytest.raises(CodeMismatch):
            await check_verification("12345")

        assert get_challenge("12345")["code"] == code
        assert find_member("12345") is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_mismatch_then_success(self):
        code = start_verification("12345")["code"]
        respx.get(PROFILE_URL).mock(side_effect=[
            httpx.Response(200, json={"id": 12345, "name": "Pilot", "displayName": "Ace", "description": ""}),
            httpx.Response(200, json={"id": 12345, "name": "Pilot", "displayName": "Ace", "description": code}),
        ])

        with pytest.raises(CodeMismatch):
            await check_verification("12345")
        result = await check_verification("12345")

        assert result.member["roblox_id"] == "12345"

    @pytest.mark.asyncio
    @respx.mock
    async def test_old_code_after_reissue_fails(self):
        old = start_verification("12345")["code"]
        start_verification("12345")
        mock_profile(old)

        with pytest.raises(CodeMismatch):
            await check_verification("12345")

    @pytest.mark.asyncio
    async def test_expired_code(self):
        start_verification("12345")
        age_challenge("12345", 11)

        with pytest.raises(Expired):
            await check_verification("12345")

    @pytest.mark.asyncio
    @respx.mock
    async def test_upstream_error(self):
        start_verification("12345")
        respx.get(PROFILE_URL).mock(return_value=httpx.Response(503))

        with pytest.raises(UpstreamUnavailable):
            await check_verification("12345")
        assert get_challenge("12345") is not None

    @pytest.mark.asyncio
    @respx.mock
    async def test_upstream_timeout(self):
        start_verification("12345")
        respx.get(PROFILE_URL).mock(side_effect=httpx.ReadTimeout("timed out"))

        with pytest.raises(UpstreamUnavailable):
            await check_verification("12345")

    @pytest.mark.asyncio
    @respx.mock
    async def test_code_replaced_during_check(self):
        """Test a re-issue between fetch and consume does not verify with the stale code."""
        code = start_verification("12345")["code"]

        def reissue(request):
            with get_db() as conn:
                conn.execute(
                    "UPDATE verification_codes SET code = 'USAFE-ZZZZZZ' WHERE roblox_id = '12345'"
                )
            return httpx.Response(200, json={"id": 12345, "name": "Pilot", "displayName": "Ace", "description": code})

        respx.get(PROFILE_URL).mock(side_effect=reissue)

        with pytest.raises(NoChallenge):
            await check_verification("12345")
        assert find_member("12345") is None
