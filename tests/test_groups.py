import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import auth
import services
from database import Base
from models import GroupType, InvitationStatus
from schemas import (
    CategoryIn,
    GroupIn,
    GroupUpdateIn,
    InvitationIn,
    InvitationResponseIn,
    RegisterIn,
)
from services import (
    DEFAULT_CATEGORIES,
    BusinessRuleError,
    CategoryService,
    ConflictError,
    ForbiddenError,
    GroupService,
    InvitationService,
    NotFoundError,
    UserService,
    accessible_group_ids,
    get_personal_group,
)


@pytest.fixture(autouse=True)
def fast_hashing(monkeypatch):
    monkeypatch.setattr(
        services, "hash_password", lambda password: auth.hash_password(password, rounds=4)
    )


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def register(session, name: str = "Ana", email: str = "ana@example.com"):
    return UserService(session).register(
        RegisterIn(
            name=name,
            email=email,
            password="segredo123",
            confirm_password="segredo123",
        )
    )


def test_register_creates_personal_group() -> None:
    session = make_session()

    user = register(session, email="Ana@Example.com")

    assert user.email == "ana@example.com"
    assert user.password_hash != "segredo123"
    personal = get_personal_group(session, user.id)
    assert personal is not None
    assert personal.type == GroupType.personal
    assert personal.name == "Pessoal"
    assert accessible_group_ids(session, user.id) == [personal.id]


def test_register_rejects_duplicate_email() -> None:
    session = make_session()
    register(session)

    with pytest.raises(ConflictError) as exc_info:
        register(session, name="Outra", email="ANA@example.com")

    assert exc_info.value.details == {"email": ["Este e-mail já está em uso"]}


def test_register_requires_matching_passwords() -> None:
    with pytest.raises(ValidationError) as exc_info:
        RegisterIn(
            name="Ana",
            email="ana@example.com",
            password="segredo123",
            confirmPassword="outra-senha",
        )
    assert "As senhas não coincidem" in str(exc_info.value)


@pytest.mark.parametrize("email", [".ana@exa_mple..com", "a@b.c@d.e", "ana@", "ana"])
def test_malformed_emails_are_rejected(email: str) -> None:
    with pytest.raises(ValidationError):
        RegisterIn(
            name="Ana",
            email=email,
            password="segredo123",
            confirm_password="segredo123",
        )
    with pytest.raises(ValidationError):
        InvitationIn(email=email, group_id=1)


def test_authenticate_checks_password() -> None:
    session = make_session()
    user = register(session)
    service = UserService(session)

    assert service.authenticate("ANA@example.com", "segredo123").id == user.id
    assert service.authenticate("ana@example.com", "errada") is None
    assert service.authenticate("nobody@example.com", "segredo123") is None


def test_collaborative_group_gets_owner_and_default_categories() -> None:
    session = make_session()
    user = register(session)

    group = GroupService(session, user.id).create(GroupIn(name="Casa", description="Contas"))

    assert group.type == GroupType.collaborative
    assert [m.user_id for m in group.members] == [user.id]
    assert group.members[0].is_owner is True
    names = {c.name for c in CategoryService(session, user.id).list(group.id)}
    assert names == set(DEFAULT_CATEGORIES)
    assert len(DEFAULT_CATEGORIES) == 21
    assert [g.id for g in GroupService(session, user.id).list_collaborative()] == [group.id]


def test_group_detail_requires_membership() -> None:
    session = make_session()
    owner = register(session)
    outsider = register(session, "Bia", "bia@example.com")
    group = GroupService(session, owner.id).create(GroupIn(name="Casa", description="Contas"))

    detail = GroupService(session, owner.id).get_detail(group.id)
    assert detail.members[0].user.name == "Ana"

    with pytest.raises(ForbiddenError):
        GroupService(session, outsider.id).get_detail(group.id)
    with pytest.raises(NotFoundError):
        GroupService(session, owner.id).get_detail(9999)


def test_only_owner_updates_or_deletes() -> None:
    session = make_session()
    owner = register(session)
    member = register(session, "Bia", "bia@example.com")
    service = GroupService(session, owner.id)
    group = service.create(GroupIn(name="Casa", description="Contas"))
    service.add_member(group.id, member.id)

    with pytest.raises(ForbiddenError):
        GroupService(session, member.id).update(group.id, GroupUpdateIn(name="Minha"))
    with pytest.raises(ForbiddenError):
        GroupService(session, member.id).delete(group.id)

    updated = service.update(group.id, GroupUpdateIn(name="Casa Nova"))
    assert updated.name == "Casa Nova"
    assert updated.description == "Contas"

    service.delete(group.id)
    assert service.list_collaborative() == []


def test_personal_group_cannot_be_deleted() -> None:
    session = make_session()
    user = register(session)
    personal = get_personal_group(session, user.id)

    with pytest.raises(BusinessRuleError):
        GroupService(session, user.id).delete(personal.id)


def test_member_management() -> None:
    session = make_session()
    owner = register(session)
    member = register(session, "Bia", "bia@example.com")
    service = GroupService(session, owner.id)
    group = service.create(GroupIn(name="Casa", description="Contas"))

    service.add_member(group.id, member.id)
    with pytest.raises(ConflictError):
        service.add_member(group.id, member.id)
    with pytest.raises(NotFoundError):
        service.add_member(group.id, 9999)
    assert [m.user_id for m in service.list_members(group.id)] == [owner.id, member.id]

    with pytest.raises(BusinessRuleError):
        service.remove_member(group.id, owner.id)
    service.remove_member(group.id, member.id)
    assert [m.user_id for m in service.list_members(group.id)] == [owner.id]


def test_invitation_flow() -> None:
    session = make_session()
    owner = register(session)
    guest = register(session, "Bia", "bia@example.com")
    group = GroupService(session, owner.id).create(GroupIn(name="Casa", description="Contas"))
    inviter = InvitationService(session, owner.id)

    invitation = inviter.invite(InvitationIn(email="BIA@example.com", group_id=group.id))
    assert invitation is not None
    # a second pending invitation for the same person is not created
    assert inviter.invite(InvitationIn(email="bia@example.com", group_id=group.id)) is None
    assert inviter.invite(InvitationIn(email="ghost@example.com", group_id=group.id)) is None
    assert inviter.invite(InvitationIn(email="ana@example.com", group_id=group.id)) is None

    receiver = InvitationService(session, guest.id)
    [pending] = receiver.list_pending()
    assert pending.group.name == "Casa"
    assert pending.sender.name == "Ana"

    with pytest.raises(ForbiddenError):
        inviter.respond(pending.id, InvitationStatus.accepted)

    answered = receiver.respond(pending.id, InvitationStatus.accepted)
    assert answered.status == InvitationStatus.accepted
    assert group.id in accessible_group_ids(session, guest.id)
    assert receiver.list_pending() == []

    with pytest.raises(BusinessRuleError):
        receiver.respond(pending.id, InvitationStatus.rejected)


def test_inviting_into_a_foreign_group_is_forbidden() -> None:
    session = make_session()
    owner = register(session)
    stranger = register(session, "Bia", "bia@example.com")
    group = GroupService(session, owner.id).create(GroupIn(name="Casa", description="Contas"))

    with pytest.raises(ForbiddenError):
        InvitationService(session, stranger.id).invite(
            InvitationIn(email="ana@example.com", group_id=group.id)
        )


def test_invitation_answer_must_not_be_pending() -> None:
    with pytest.raises(ValidationError):
        InvitationResponseIn(status="PENDING")
    assert InvitationResponseIn(status="REJECTED").status == InvitationStatus.rejected


def test_categories_are_unique_per_group() -> None:
    session = make_session()
    user = register(session)
    personal = get_personal_group(session, user.id)
    service = CategoryService(session, user.id)

    created = service.create(CategoryIn(name="Mercado", group_id=personal.id))
    assert created.group_id == personal.id

    with pytest.raises(ConflictError):
        service.create(CategoryIn(name="mercado", group_id=personal.id))
    with pytest.raises(NotFoundError):
        service.list(9999)
