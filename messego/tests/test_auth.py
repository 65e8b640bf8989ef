from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt
from sqlalchemy import select

from messego.auth import (
    ALGORITHM,
    TOKEN_AUDIENCE,
    TOKEN_ISSUER,
    Identity,
    create_access_token,
    decode_token,
    hash_password,
    verify_password,
)
from messego.errors import ConfigError, MalformedTokenError, TokenExpiredError
from messego.gate import SESSION_COOKIE_NAME
from messego.models.users import User

from .conftest import PASSWORD, as_user

ALICE = Identity(user_id=1, email='alice@example.com', name='Alice')


def _claims(**overrides):
    now = datetime.now(timezone.utc)
    claims = {
        'userId': 1,
        'email': 'alice@example.com',
        'name': 'Alice',
        'iat': now,
        'exp': now + timedelta(days=7),
        'iss': TOKEN_ISSUER,
        'aud': TOKEN_AUDIENCE,
    }
    claims.update(overrides)
    return claims


class TestTokenService:

    def test_issued_token_verifies_to_same_identity(self):
        token = create_access_token(ALICE)
        assert decode_token(token) == ALICE

    def test_token_expires_after_seven_days(self):
        token = create_access_token(ALICE, expires_delta=None)
        claims = jwt.get_unverified_claims(token)
        assert claims['exp'] - claims['iat'] == 7 * 24 * 60 * 60
        assert claims['iss'] == 'messego-app'
        assert claims['aud'] == 'messego-users'

    def test_expired_token_is_rejected(self):
        token = create_access_token(ALICE, expires_delta=timedelta(seconds=-10))
        with pytest.raises(TokenExpiredError):
            decode_token(token)

    def test_token_signed_with_other_secret_is_malformed(self):
        token = jwt.encode(_claims(), 'not-the-secret', algorithm=ALGORITHM)
        with pytest.raises(MalformedTokenError):
            decode_token(token)

    @pytest.mark.parametrize('field,value', [('aud', 'someone-else'), ('iss', 'evil-app')])
    def test_wrong_audience_or_issuer_is_malformed(self, field, value):
        token = jwt.encode(_claims(**{field: value}), 'test-secret', algorithm=ALGORITHM)
        with pytest.raises(MalformedTokenError):
            decode_token(token)

    def test_garbage_is_malformed(self):
        with pytest.raises(MalformedTokenError):
            decode_token('definitely.not.a-token')

    def test_missing_claims_are_malformed(self):
        claims = _claims()
        del claims['userId']
        token = jwt.encode(claims, 'test-secret', algorithm=ALGORITHM)
        with pytest.raises(MalformedTokenError):
            decode_token(token)

    def test_missing_secret_is_config_error(self, monkeypatch):
        monkeypatch.delenv('JWT_SECRET', raising=False)
        monkeypatch.delenv('JWT_SECRET_KEY', raising=False)
        with pytest.raises(ConfigError):
            create_access_token(ALICE)

    def test_password_hash_is_not_plaintext(self):
        hashed = hash_password(PASSWORD)
        assert hashed != PASSWORD
        assert verify_password(PASSWORD, hashed)
        assert not verify_password('Wrong123!', hashed)


class TestAuthRoutes:

    @pytest.mark.asyncio
    async def test_signup_stores_hashed_password_and_login_works(self, client, session_factory):
        r = await client.post('/api/auth/signup', json={
            'name': 'Alice Smith',
            'email': '  Alice@Example.COM ',
            'password': PASSWORD,
        })
        assert r.status_code == 201, r.text
        body = r.json()
        assert body['success'] is True
        assert body['message'] == 'Account created successfully'
        user = body['data']['user']
        assert user['email'] == 'alice@example.com'
        assert user['name'] == 'Alice Smith'
        assert 'password' not in user and 'hashedPassword' not in user

        async with session_factory() as session:
            stored = (await session.execute(select(User).where(User.id == user['id']))).scalar_one()
        assert stored.hashed_password != PASSWORD

        login = await client.post('/api/auth/login', json={'email': 'alice@example.com', 'password': PASSWORD})
        assert login.status_code == 200
        data = login.json()['data']
        assert data['user']['id'] == user['id']
        assert decode_token(data['token']).user_id == user['id']

        cookie = login.headers['set-cookie']
        assert cookie.startswith(f'{SESSION_COOKIE_NAME}=')
        assert 'HttpOnly' in cookie
        assert 'Max-Age=604800' in cookie
        assert 'samesite=lax' in cookie.lower()

    @pytest.mark.asyncio
    async def test_signup_duplicate_email_conflicts(self, client, make_user):
        await make_user('Alice', 'alice@example.com')
        r = await client.post('/api/auth/signup', json={'name': 'Other Alice', 'email': 'ALICE@example.com', 'password': PASSWORD})
        assert r.status_code == 409
        assert r.json() == {
            'success': False,
            'message': 'Email already exists',
            'errors': {'email': 'An account with this email already exists'},
        }

    @pytest.mark.asyncio
    async def test_signup_reports_every_invalid_field(self, client):
        r = await client.post('/api/auth/signup', json={'name': 'A1', 'email': 'nope', 'password': 'short'})
        assert r.status_code == 400
        body = r.json()
        assert body['success'] is False
        assert set(body['errors']) == {'name', 'email', 'password'}

    @pytest.mark.asyncio
    async def test_login_wrong_password_sets_no_cookie(self, client, make_user):
        await make_user('Alice', 'alice@example.com')
        r = await client.post('/api/auth/login', json={'email': 'alice@example.com', 'password': 'Wrong123!'})
        assert r.status_code == 401
        assert r.json() == {'success': False, 'message': 'Invalid credentials'}
        assert 'set-cookie' not in r.headers

    @pytest.mark.asyncio
    async def test_login_unknown_email_is_same_failure(self, client):
        r = await client.post('/api/auth/login', json={'email': 'ghost@example.com', 'password': PASSWORD})
        assert r.status_code == 401
        assert r.json()['message'] == 'Invalid credentials'

    @pytest.mark.asyncio
    async def test_login_requires_both_fields(self, client):
        r = await client.post('/api/auth/login', json={'email': 'alice@example.com'})
        assert r.status_code == 400
        assert r.json()['message'] == 'Email and password are required'

    @pytest.mark.asyncio
    async def test_login_without_secret_is_server_error(self, client, make_user, monkeypatch):
        await make_user('Alice', 'alice@example.com')
        monkeypatch.delenv('JWT_SECRET', raising=False)
        monkeypatch.delenv('JWT_SECRET_KEY', raising=False)
        r = await client.post('/api/auth/login', json={'email': 'alice@example.com', 'password': PASSWORD})
        assert r.status_code == 500
        assert r.json()['message'] == 'Server configuration error'
        assert 'set-cookie' not in r.headers

    @pytest.mark.asyncio
    async def test_me_returns_identity_with_avatar(self, client, make_user):
        user, token = await make_user('Alice Smith', 'alice@example.com')
        r = await client.get('/api/auth/me', headers=as_user(token))
        assert r.status_code == 200
        me = r.json()['data']['user']
        assert me['id'] == user['id']
        assert me['email'] == 'alice@example.com'
        assert me['profileUrl'].startswith('https://ui-avatars.com/api/?name=Alice%20Smith')

    @pytest.mark.asyncio
    async def test_me_requires_cookie(self, client):
        r = await client.get('/api/auth/me')
        assert r.status_code == 401
        assert r.json() == {'success': False, 'message': 'No authentication token found'}

    @pytest.mark.asyncio
    async def test_me_rejects_expired_token(self, client):
        token = create_access_token(ALICE, expires_delta=timedelta(seconds=-10))
        r = await client.get('/api/auth/me', headers=as_user(token))
        assert r.status_code == 401
        assert r.json()['message'] == 'Token has expired'

    @pytest.mark.asyncio
    async def test_logout_clears_cookie_but_token_stays_valid(self, client, make_user):
        _, token = await make_user('Alice', 'alice@example.com')
        r = await client.post('/api/auth/logout')
        assert r.status_code == 200
        assert r.json()['success'] is True
        cookie = r.headers['set-cookie']
        assert cookie.startswith(f'{SESSION_COOKIE_NAME}=')
        assert 'Max-Age=0' in cookie

        # no server-side revocation: a captured token keeps working until it expires
        client.cookies.clear()
        r = await client.get('/api/auth/me', headers=as_user(token))
        assert r.status_code == 200
