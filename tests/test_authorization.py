import pytest

from models import PermissionName
from schemas import LinkCredentials, Scope
from services import (
    INSUFFICIENT_GRANT_MESSAGE,
    NOT_SIGNED_IN_MESSAGE,
    AccessLevel,
    AuthorizationGate,
    InsufficientPermissions,
    NotSignedIn,
    TagService,
)
from sessions import SessionUser


@pytest.fixture
def tree(ledger):
    ledger.tag("T")
    ledger.tag("T-child", "T")
    ledger.tag("other")
    return {
        "e1": ledger.entity("E1", "T"),
        "e2": ledger.entity("E2", "T-child"),
        "e3": ledger.entity("E3", "other"),
    }


def _gate(session) -> AuthorizationGate:
    return AuthorizationGate(session, TagService(session))


def test_any_session_passes_light_check_without_grants(session, tree) -> None:
    gate = _gate(session)
    user = SessionUser(id="nobody")

    gate.authorize(
        Scope(entity_id=tree["e3"].id), AccessLevel.any_session_or_link, user=user
    )
    gate.authorize(Scope(entity_tag="other"), AccessLevel.session, user=user)


@pytest.mark.parametrize(
    "permission", [PermissionName.admin, PermissionName.accounts_visualize]
)
def test_unconditional_grants_cover_everything(
    session, ledger, tree, permission
) -> None:
    ledger.permission("u1", permission)
    gate = _gate(session)
    user = SessionUser(id="u1")

    gate.authorize(
        Scope(entity_id=tree["e3"].id), AccessLevel.fine_grained_grant, user=user
    )
    gate.authorize(Scope(entity_tag="T"), AccessLevel.fine_grained_grant, user=user)


def test_tag_grant_covers_descendants_only(session, ledger, tree) -> None:
    ledger.permission("u1", PermissionName.accounts_visualize_some, tags=["T"])
    gate = _gate(session)
    user = SessionUser(id="u1")

    gate.authorize(
        Scope(entity_id=tree["e1"].id), AccessLevel.fine_grained_grant, user=user
    )
    gate.authorize(
        Scope(entity_id=tree["e2"].id), AccessLevel.fine_grained_grant, user=user
    )
    gate.authorize(
        Scope(entity_tag="T-child"), AccessLevel.fine_grained_grant, user=user
    )

    with pytest.raises(InsufficientPermissions) as excinfo:
        gate.authorize(
            Scope(entity_id=tree["e3"].id), AccessLevel.fine_grained_grant, user=user
        )
    assert str(excinfo.value) == INSUFFICIENT_GRANT_MESSAGE

    with pytest.raises(InsufficientPermissions):
        gate.authorize(
            Scope(entity_tag="other"), AccessLevel.fine_grained_grant, user=user
        )


def test_entity_grant_covers_listed_ids(session, ledger, tree) -> None:
    ledger.permission(
        "u1", PermissionName.accounts_visualize_some, entity_ids=[tree["e3"].id]
    )
    gate = _gate(session)
    user = SessionUser(id="u1")

    gate.authorize(
        Scope(entity_id=tree["e3"].id), AccessLevel.fine_grained_grant, user=user
    )
    with pytest.raises(InsufficientPermissions):
        gate.authorize(
            Scope(entity_id=tree["e1"].id), AccessLevel.fine_grained_grant, user=user
        )


def test_grants_of_other_users_do_not_apply(session, ledger, tree) -> None:
    ledger.permission("someone-else", PermissionName.admin)

    with pytest.raises(InsufficientPermissions):
        _gate(session).authorize(
            Scope(entity_id=tree["e1"].id),
            AccessLevel.fine_grained_grant,
            user=SessionUser(id="u1"),
        )


def test_valid_link_grants_its_entity(session, ledger, tree) -> None:
    link = ledger.link(tree["e1"], "s3cret")
    gate = _gate(session)
    credentials = LinkCredentials(link_id=link.id, link_token="s3cret")
    scope = Scope(entity_id=tree["e1"].id)

    gate.authorize(scope, AccessLevel.any_session_or_link, link=credentials)
    gate.authorize(scope, AccessLevel.fine_grained_grant, link=credentials)


@pytest.mark.parametrize(
    "token, entity_key",
    [("wrong", "e1"), ("s3cret", "e2"), (None, "e1")],
)
def test_link_mismatch_is_rejected(
    session, ledger, tree, token, entity_key
) -> None:
    link = ledger.link(tree["e1"], "s3cret")

    with pytest.raises(NotSignedIn) as excinfo:
        _gate(session).authorize(
            Scope(entity_id=tree[entity_key].id),
            AccessLevel.any_session_or_link,
            link=LinkCredentials(link_id=link.id, link_token=token),
        )
    assert str(excinfo.value) == NOT_SIGNED_IN_MESSAGE


def test_link_never_covers_tag_scope_or_session_only_reads(
    session, ledger, tree
) -> None:
    link = ledger.link(tree["e1"], "s3cret")
    credentials = LinkCredentials(link_id=link.id, link_token="s3cret")
    gate = _gate(session)

    with pytest.raises(NotSignedIn):
        gate.authorize(
            Scope(entity_tag="T"), AccessLevel.any_session_or_link, link=credentials
        )
    with pytest.raises(NotSignedIn):
        gate.authorize(
            Scope(entity_id=tree["e1"].id), AccessLevel.session, link=credentials
        )


def test_anonymous_caller_without_link_is_rejected(session, tree) -> None:
    with pytest.raises(NotSignedIn):
        _gate(session).authorize(
            Scope(entity_id=tree["e1"].id), AccessLevel.any_session_or_link
        )
