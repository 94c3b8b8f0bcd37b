"""
Teams: membership, invitations, roles and shared analyses.

Roles, strongest first: owner > admin > member > viewer.
"""

import logging
import secrets
from datetime import datetime, timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from errors import AppError
from models import RepositoryAnalysis, SharedAnalysis, Team, TeamInvitation, TeamMember, User
from schemas import (
    AcceptInvitationRequest, InvitationInfo, InviteRequest, RecentAnalysisItem, RoleUpdate,
    ShareAnalysisRequest, TeamCreate, TeamInfo, TeamMemberInfo, TeamRole,
)
from services.analysis import build_analysis_info, build_repository_info

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/teams", tags=["teams"])

INVITATION_TTL = timedelta(days=7)
MANAGER_ROLES = ("owner", "admin")


def _membership(db: Session, team_id: int, user: User) -> TeamMember:
    """The caller's membership; non-members get NOT_FOUND so teams are not enumerable."""
    member = db.query(TeamMember).filter(TeamMember.team_id == team_id, TeamMember.user_id == user.id).first()
    if member is None:
        raise AppError("NOT_FOUND", "Team not found.")
    return member


def _require_role(member: TeamMember, roles: tuple[str, ...]):
    if member.role not in roles:
        raise AppError("FORBIDDEN", f"This action requires one of the roles: {', '.join(roles)}.")


def _team_info(team: Team, role: str) -> TeamInfo:
    return TeamInfo(
        id=team.id,
        name=team.name,
        description=team.description,
        owner_id=team.owner_id,
        role=role,
        member_count=len(team.members),
        created_at=team.created_at,
    )


@router.post("", response_model=TeamInfo, status_code=201)
def create_team(body: TeamCreate, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    team = Team(name=body.name, description=body.description, owner_id=user.id)
    team.members = [TeamMember(user_id=user.id, role="owner")]
    db.add(team)
    db.commit()
    return _team_info(team, "owner")


@router.get("", response_model=list[TeamInfo])
def list_teams(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    memberships = (
        db.query(TeamMember)
        .filter(TeamMember.user_id == user.id)
        .order_by(TeamMember.joined_at)
        .all()
    )
    return [_team_info(m.team, m.role) for m in memberships]


@router.post("/invitations/accept", response_model=TeamInfo)
def accept_invitation(body: AcceptInvitationRequest, user: User = Depends(get_current_user),
                      db: Session = Depends(get_db)):
    invitation = db.query(TeamInvitation).filter(TeamInvitation.token == body.token).first()
    if invitation is None or invitation.accepted_at is not None:
        raise AppError("INVALID_TOKEN", "This invitation is invalid or has already been used.")
    if invitation.expires_at <= datetime.utcnow():
        raise AppError("TOKEN_EXPIRED", "This invitation has expired.")
    if invitation.email.lower() != user.email.lower():
        raise AppError("FORBIDDEN", "This invitation was sent to a different email address.")

    db.add(TeamMember(team_id=invitation.team_id, user_id=user.id, role=invitation.role))
    invitation.accepted_at = datetime.utcnow()
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise AppError("CONFLICT", "You are already a member of this team.")
    logger.info(f"User {user.id} joined team {invitation.team_id}", extra={"user_id": user.id})
    return _team_info(invitation.team, invitation.role)


@router.get("/{team_id}/members", response_model=list[TeamMemberInfo])
def list_members(team_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    _membership(db, team_id, user)
    members = db.query(TeamMember).filter(TeamMember.team_id == team_id).order_by(TeamMember.joined_at).all()
    return [
        TeamMemberInfo(id=m.id, user_id=m.user_id, email=m.user.email, role=m.role, joined_at=m.joined_at)
        for m in members
    ]


@router.post("/{team_id}/invitations", response_model=InvitationInfo, status_code=201)
def invite(team_id: int, body: InviteRequest, user: User = Depends(get_current_user),
           db: Session = Depends(get_db)):
    _require_role(_membership(db, team_id, user), MANAGER_ROLES)
    if body.role == TeamRole.OWNER:
        raise AppError("INVALID_INPUT", "A team has exactly one owner.")

    email = body.email.strip().lower()
    already = (
        db.query(TeamMember)
        .join(User, User.id == TeamMember.user_id)
        .filter(TeamMember.team_id == team_id, User.email == email)
        .first()
    )
    if already:
        raise AppError("CONFLICT", "This user is already a member of the team.")

    invitation = TeamInvitation(
        team_id=team_id,
        email=email,
        role=body.role.value,
        token=secrets.token_urlsafe(32),
        invited_by=user.id,
        expires_at=datetime.utcnow() + INVITATION_TTL,
    )
    db.add(invitation)
    db.commit()
    logger.info(f"Team {team_id} invited a new {invitation.role}", extra={"user_id": user.id})
    return invitation


@router.put("/{team_id}/members/{user_id}/role", response_model=TeamMemberInfo)
def change_role(team_id: int, user_id: int, body: RoleUpdate, user: User = Depends(get_current_user),
                db: Session = Depends(get_db)):
    _require_role(_membership(db, team_id, user), MANAGER_ROLES)
    target = db.query(TeamMember).filter(TeamMember.team_id == team_id, TeamMember.user_id == user_id).first()
    if target is None:
        raise AppError("NOT_FOUND", "Member not found.")
    if target.role == "owner":
        raise AppError("FORBIDDEN", "The owner's role cannot be changed.")
    if body.role == TeamRole.OWNER:
        raise AppError("INVALID_INPUT", "A team has exactly one owner.")

    target.role = body.role.value
    db.commit()
    return TeamMemberInfo(id=target.id, user_id=target.user_id, email=target.user.email,
                          role=target.role, joined_at=target.joined_at)


@router.delete("/{team_id}/members/{user_id}")
def remove_member(team_id: int, user_id: int, user: User = Depends(get_current_user),
                  db: Session = Depends(get_db)):
    _require_role(_membership(db, team_id, user), ("owner",))
    target = db.query(TeamMember).filter(TeamMember.team_id == team_id, TeamMember.user_id == user_id).first()
    if target is None:
        raise AppError("NOT_FOUND", "Member not found.")
    if target.role == "owner":
        raise AppError("FORBIDDEN", "The team owner cannot be removed.")
    db.delete(target)
    db.commit()
    return {"success": True}


# =============================================================================
# SHARED ANALYSES
# =============================================================================

@router.post("/{team_id}/share", status_code=201)
def share_analysis(team_id: int, body: ShareAnalysisRequest, user: User = Depends(get_current_user),
                   db: Session = Depends(get_db)):
    _membership(db, team_id, user)
    if db.get(RepositoryAnalysis, body.analysis_id) is None:
        raise AppError("NOT_FOUND", "Analysis not found.")

    db.add(SharedAnalysis(analysis_id=body.analysis_id, team_id=team_id, shared_by=user.id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise AppError("CONFLICT", "This analysis is already shared with the team.")
    return {"success": True}


@router.get("/{team_id}/shared", response_model=list[RecentAnalysisItem])
def shared_analyses(team_id: int, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    _membership(db, team_id, user)
    shares = (
        db.query(SharedAnalysis)
        .filter(SharedAnalysis.team_id == team_id)
        .order_by(SharedAnalysis.created_at.desc(), SharedAnalysis.id.desc())
        .all()
    )
    return [
        RecentAnalysisItem(
            repository=build_repository_info(share.analysis.repository),
            analysis=build_analysis_info(share.analysis),
        )
        for share in shares
    ]
