import pytest

from bffauth.service.user_mapping import ClaimsUserHandler, detect_provider, transform_user_from_provider


@pytest.mark.parametrize(
    "claims,expected",
    [
        ({"realm_access": {"roles": ["admin"]}}, "keycloak"),
        ({"resource_access": {"app": {"roles": []}}}, "keycloak"),
        ({"nickname": "ada"}, "auth0"),
        ({"app_metadata": {}}, "auth0"),
        ({"iss": "https://tenant.auth0.com/"}, "auth0"),
        ({"iss": "https://sso.example.com/auth/realms/main"}, "keycloak"),
        ({"sub": "x"}, "unknown"),
        ({}, "unknown"),
        (None, "unknown"),
    ],
)
def test_detect_provider(claims, expected):
    assert detect_provider(claims) == expected


def test_keycloak_mapping():
    user = transform_user_from_provider(
        {
            "sub": "kc-1",
            "preferred_username": "ada",
            "name": "Ada Lovelace",
            "given_name": "Ada",
            "family_name": "Lovelace",
            "email": "ada@example.com",
            "email_verified": True,
            "realm_access": {"roles": ["admin", "user"]},
        }
    )
    assert user.username == "ada"
    assert user.full_name == "Ada Lovelace"
    assert user.auth_id == "kc-1"
    assert user.roles == ["admin", "user"]
    assert user.last_login is not None


def test_auth0_mapping_reads_roles_from_app_metadata():
    user = transform_user_from_provider(
        {"sub": "auth0|1", "nickname": "ada", "picture": "https://img", "app_metadata": {"roles": ["editor"]}}
    )
    assert user.username == "ada"
    assert user.picture == "https://img"
    assert user.roles == ["editor"]


def test_fallback_oidc_mapping():
    user = transform_user_from_provider({"sub": "abc", "email": "x@example.com", "locale": "en"})
    assert user.username == "x@example.com"
    assert user.email == "x@example.com"
    assert user.locale == "en"
    assert user.roles == []


def test_claims_handler_returns_plain_dict():
    handler = ClaimsUserHandler()
    local = handler.map_user_to_local({"sub": "abc"})
    assert isinstance(local, dict)
    assert local["auth_id"] == "abc"
    assert handler.create_or_update_user({"sub": "abc"})["username"] == "abc"
