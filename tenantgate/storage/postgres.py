from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantgate.logging import get_logger
from tenantgate.storage.common import (
    check_user_fields,
    generate_uuid,
    normalize_email,
    parse_ip_address,
    token_fields,
)
from tenantgate.storage.errors import ConstraintViolation
from tenantgate.storage.models import (
    AuditEvent,
    PasswordHistoryEntry,
    RefreshToken,
    Session,
    Tenant,
    TenantInvitation,
    TenantMembership,
    UserCredential,
    utcnow,
)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

REQUIRED_TABLES = (
    "app_user",
    "password_history",
    "auth_session",
    "refresh_token",
    "mfa_recovery_code",
    "tenant",
    "tenant_membership",
    "tenant_invitation",
    "system_setting",
    "audit_event",
)

_USER_COLUMNS = (
    "id, email, password_hash, first_name, last_name, role, is_active, email_verified, "
    "failed_login_attempts, locked_until, last_login_at, mfa_enabled, mfa_type, mfa_secret, "
    "sms_code, sms_code_expires_at, phone_number, email_verification_token, "
    "email_verification_expires_at, password_reset_token, password_reset_expires_at, "
    "password_reset_otp, password_reset_otp_expires_at, account_recovery_token, "
    "account_recovery_expires_at, created_at, updated_at"
)


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


class PostgresStore:
    """Postgres-backed store built on a psycopg connection pool.

    One-time token consumption, refresh token rotation and invitation
    acceptance are single conditional statements or short transactions so
    concurrent requests cannot both win.
    """

    def __init__(self, dsn: str, *, verify_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def apply_schema(self) -> None:
        """Create any missing tables from the bundled schema file."""

        ddl = SCHEMA_PATH.read_text()
        with self._connect() as conn:
            conn.execute(ddl)

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply tenantgate/storage/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> UserCredential:
        return UserCredential(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            role=row.get("role") or "user",
            is_active=bool(row.get("is_active", True)),
            email_verified=bool(row.get("email_verified", False)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login_at=row.get("last_login_at"),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_type=row.get("mfa_type"),
            mfa_secret=row.get("mfa_secret"),
            sms_code=row.get("sms_code"),
            sms_code_expires_at=row.get("sms_code_expires_at"),
            phone_number=row.get("phone_number"),
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires_at=row.get("password_reset_expires_at"),
            password_reset_otp=row.get("password_reset_otp"),
            password_reset_otp_expires_at=row.get("password_reset_otp_expires_at"),
            account_recovery_token=row.get("account_recovery_token"),
            account_recovery_expires_at=row.get("account_recovery_expires_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            ip_address=_str_or_none(row.get("ip_address")),
            user_agent=row.get("user_agent"),
            device_info=row.get("device_info"),
            last_used_at=row.get("last_used_at"),
            is_active=bool(row.get("is_active", True)),
            revoked=bool(row.get("revoked", False)),
            revoked_at=row.get("revoked_at"),
            revoked_by=row.get("revoked_by"),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            session_id=_str_or_none(row.get("session_id")),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            revoked=bool(row.get("revoked", False)),
            revoked_at=row.get("revoked_at"),
            revoked_by=row.get("revoked_by"),
            revocation_reason=row.get("revocation_reason"),
            replaced_by_token_id=_str_or_none(row.get("replaced_by_token_id")),
        )

    @staticmethod
    def _membership_from_row(row: Dict[str, Any]) -> TenantMembership:
        return TenantMembership(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            user_id=str(row["user_id"]),
            role=row.get("role") or "member",
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            is_active=bool(row.get("is_active", True)),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _invitation_from_row(row: Dict[str, Any]) -> TenantInvitation:
        return TenantInvitation(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            email=row["email"],
            role=row.get("role") or "member",
            token=row["token"],
            invited_by=_str_or_none(row.get("invited_by")),
            expires_at=row["expires_at"],
            accepted_at=row.get("accepted_at"),
            accepted_by=_str_or_none(row.get("accepted_by")),
            cancelled_at=row.get("cancelled_at"),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        user: UserCredential,
        *,
        tenant: Optional[Tenant] = None,
        membership_role: str = "owner",
    ) -> UserCredential:
        email = normalize_email(user.email)
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, first_name, last_name, role,
                        is_active, email_verified, mfa_enabled, mfa_type, mfa_secret, phone_number,
                        email_verification_token, email_verification_expires_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user.id,
                        email,
                        user.password_hash,
                        user.first_name,
                        user.last_name,
                        user.role,
                        user.is_active,
                        user.email_verified,
                        user.mfa_enabled,
                        user.mfa_type,
                        user.mfa_secret,
                        user.phone_number,
                        user.email_verification_token,
                        user.email_verification_expires_at,
                        user.created_at,
                        user.updated_at,
                    ),
                ).fetchone()
                if tenant is not None:
                    self._insert_tenant(conn, tenant)
                    conn.execute(
                        """
                        INSERT INTO tenant_membership (id, tenant_id, user_id, role, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (generate_uuid(), tenant.id, user.id, membership_role, utcnow()),
                    )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "slug" in constraint:
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[UserCredential]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserCredential]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE email = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields: Any) -> Optional[UserCredential]:
        values = dict(fields)
        updated_at = values.pop("updated_at", None) or utcnow()
        check_user_fields(values)
        if "email" in values:
            values["email"] = normalize_email(values["email"])
        assignments = ", ".join(f"{col} = %({col})s" for col in values)
        set_clause = f"{assignments}, updated_at = %(updated_at)s" if assignments else "updated_at = %(updated_at)s"
        params = {**values, "updated_at": updated_at, "user_id": user_id}
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {set_clause} WHERE id = %(user_id)s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row) if row else None

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: datetime,
    ) -> Optional[UserCredential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH cur AS (
                    SELECT id,
                        CASE WHEN locked_until IS NOT NULL AND locked_until <= %(now)s
                             THEN 0 ELSE failed_login_attempts END + 1 AS attempts,
                        CASE WHEN locked_until IS NOT NULL AND locked_until <= %(now)s
                             THEN NULL ELSE locked_until END AS carried_lock
                    FROM app_user WHERE id = %(user_id)s FOR UPDATE
                )
                UPDATE app_user u
                SET failed_login_attempts = cur.attempts,
                    locked_until = CASE WHEN cur.attempts >= %(max_attempts)s
                                        THEN %(lock_until)s ELSE cur.carried_lock END,
                    updated_at = %(now)s
                FROM cur WHERE u.id = cur.id
                RETURNING u.*
                """,
                {
                    "user_id": user_id,
                    "now": now,
                    "max_attempts": max_attempts,
                    "lock_until": lock_until,
                },
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_token(self, kind: str, token: str) -> Optional[UserCredential]:
        fields = token_fields(kind)
        if not token:
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {fields.token} = %s",
                (token,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def clear_user_token(self, kind: str, token: str) -> bool:
        fields = token_fields(kind)
        if not token:
            return False
        cleared = ", ".join(f"{col} = NULL" for col in fields.columns)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {cleared} WHERE {fields.token} = %s RETURNING id",
                (token,),
            ).fetchone()
        return row is not None

    def consume_user_token(
        self,
        kind: str,
        token: str,
        *,
        now: datetime,
        updates: Dict[str, Any],
        otp: Optional[str] = None,
        require_active: bool = False,
    ) -> Optional[UserCredential]:
        fields = token_fields(kind)
        if not token or (fields.otp and otp is None):
            return None
        check_user_fields(updates)
        params: Dict[str, Any] = {"token": token, "now": now}
        assignments = []
        for col, value in updates.items():
            params[f"set_{col}"] = value
            assignments.append(f"{col} = %(set_{col})s")
        assignments.extend(f"{col} = NULL" for col in fields.columns)
        assignments.append("updated_at = %(now)s")
        conditions = [f"{fields.token} = %(token)s", f"{fields.expires_at} > %(now)s"]
        if fields.otp:
            params["otp"] = otp
            conditions.append(f"{fields.otp} = %(otp)s")
            conditions.append(f"{fields.otp_expires_at} > %(now)s")
        if require_active:
            conditions.append("is_active")
            conditions.append("(locked_until IS NULL OR locked_until <= %(now)s)")
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET {} WHERE {} RETURNING *".format(
                    ", ".join(assignments), " AND ".join(conditions)
                ),
                params,
            ).fetchone()
        return self._user_from_row(row) if row else None

    # password history
    def add_password_history(self, user_id: str, password_hash: str) -> PasswordHistoryEntry:
        entry = PasswordHistoryEntry(
            id=generate_uuid(), user_id=user_id, password_hash=password_hash
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO password_history (id, user_id, password_hash, created_at) VALUES (%s, %s, %s, %s)",
                    (entry.id, user_id, password_hash, entry.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for history", {"user_id": user_id})
        return entry

    def list_password_history(self, user_id: str, limit: int) -> List[PasswordHistoryEntry]:
        if limit <= 0:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, password_hash, created_at FROM password_history
                WHERE user_id = %s ORDER BY created_at DESC, id DESC LIMIT %s
                """,
                (user_id, limit),
            ).fetchall()
        return [
            PasswordHistoryEntry(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                password_hash=row["password_hash"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def prune_password_history(self, user_id: str, keep: int) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM password_history
                WHERE user_id = %(user_id)s AND id NOT IN (
                    SELECT id FROM password_history WHERE user_id = %(user_id)s
                    ORDER BY created_at DESC, id DESC LIMIT %(keep)s
                )
                """,
                {"user_id": user_id, "keep": max(keep, 0)},
            )
            return cur.rowcount or 0

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, ip_address, user_agent, device_info,
                        created_at, expires_at, last_used_at, is_active, revoked)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        parse_ip_address(session.ip_address),
                        session.user_agent,
                        session.device_info,
                        session.created_at,
                        session.expires_at,
                        session.last_used_at,
                        session.is_active,
                        session.revoked,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_session SET last_used_at = %s WHERE id = %s AND NOT revoked RETURNING id",
                (now, session_id),
            ).fetchone()
        return row is not None

    def revoke_session(
        self, session_id: str, *, revoked_by: Optional[str], now: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET revoked = TRUE, revoked_at = %s, revoked_by = %s, is_active = FALSE
                WHERE id = %s AND NOT revoked
                RETURNING id
                """,
                (now, revoked_by, session_id),
            ).fetchone()
        return row is not None

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        except_session_id: Optional[str] = None,
        revoked_by: Optional[str] = None,
        now: datetime,
    ) -> List[str]:
        sql = """
            UPDATE auth_session
            SET revoked = TRUE, revoked_at = %(now)s, revoked_by = %(revoked_by)s, is_active = FALSE
            WHERE user_id = %(user_id)s AND NOT revoked
        """
        params: Dict[str, Any] = {"now": now, "revoked_by": revoked_by, "user_id": user_id}
        if except_session_id:
            sql += " AND id <> %(except_id)s"
            params["except_id"] = except_session_id
        with self._connect() as conn:
            rows = conn.execute(sql + " RETURNING id", params).fetchall()
        return [str(row["id"]) for row in rows]

    def list_active_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session WHERE user_id = %s AND NOT revoked
                ORDER BY COALESCE(last_used_at, created_at) DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # refresh tokens
    @staticmethod
    def _insert_refresh_token(conn, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (id, user_id, session_id, token_hash, expires_at, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.session_id,
                token.token_hash,
                token.expires_at,
                token.created_at,
            ),
        )

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                self._insert_refresh_token(conn, token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("refresh token owner missing", {"user_id": token.user_id})
        return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token(
        self,
        token_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, revoked_by = %s, revocation_reason = %s
                WHERE id = %s AND NOT revoked
                RETURNING id
                """,
                (now, revoked_by, reason, token_id),
            ).fetchone()
        return row is not None

    def rotate_refresh_token(
        self,
        old_token_id: str,
        new_token: RefreshToken,
        *,
        revoked_by: Optional[str],
        now: datetime,
    ) -> bool:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    UPDATE refresh_token
                    SET revoked = TRUE, revoked_at = %s, revoked_by = %s,
                        revocation_reason = 'rotated', replaced_by_token_id = %s
                    WHERE id = %s AND NOT revoked AND expires_at > %s
                    RETURNING id
                    """,
                    (now, revoked_by, new_token.id, old_token_id, now),
                ).fetchone()
                if row is None:
                    return False
                self._insert_refresh_token(conn, new_token)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return True

    def revoke_session_refresh_tokens(
        self,
        session_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, revoked_by = %s, revocation_reason = %s
                WHERE session_id = %s AND NOT revoked
                """,
                (now, revoked_by, reason, session_id),
            )
            return cur.rowcount or 0

    def revoke_user_refresh_tokens(
        self,
        user_id: str,
        *,
        revoked_by: Optional[str],
        reason: Optional[str],
        now: datetime,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s, revoked_by = %s, revocation_reason = %s
                WHERE user_id = %s AND NOT revoked
                """,
                (now, revoked_by, reason, user_id),
            )
            return cur.rowcount or 0

    def revoke_tokens_of_revoked_sessions(
        self, *, user_id: Optional[str] = None, reason: str, now: datetime
    ) -> int:
        sql = """
            UPDATE refresh_token rt
            SET revoked = TRUE, revoked_at = %(now)s, revocation_reason = %(reason)s
            FROM auth_session s
            WHERE rt.session_id = s.id AND s.revoked AND NOT rt.revoked
        """
        params: Dict[str, Any] = {"now": now, "reason": reason}
        if user_id:
            sql += " AND s.user_id = %(user_id)s"
            params["user_id"] = user_id
        with self._connect() as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount or 0

    # mfa codes
    def consume_sms_code(self, user_id: str, code: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET sms_code = NULL, sms_code_expires_at = NULL, updated_at = %s
                WHERE id = %s AND sms_code = %s AND sms_code_expires_at > %s
                RETURNING id
                """,
                (now, user_id, code, now),
            ).fetchone()
        return row is not None

    def replace_recovery_codes(self, user_id: str, code_hashes: List[str]) -> None:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute("DELETE FROM mfa_recovery_code WHERE user_id = %s", (user_id,))
                for code_hash in code_hashes:
                    conn.execute(
                        "INSERT INTO mfa_recovery_code (id, user_id, code_hash) VALUES (%s, %s, %s)",
                        (generate_uuid(), user_id, code_hash),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for recovery codes", {"user_id": user_id})

    def consume_recovery_code(self, user_id: str, code_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_recovery_code SET used = TRUE, used_at = %s
                WHERE id = (
                    SELECT id FROM mfa_recovery_code
                    WHERE user_id = %s AND code_hash = %s AND NOT used
                    LIMIT 1 FOR UPDATE SKIP LOCKED
                )
                RETURNING id
                """,
                (now, user_id, code_hash),
            ).fetchone()
        return row is not None

    def count_unused_recovery_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT count(*) AS n FROM mfa_recovery_code WHERE user_id = %s AND NOT used",
                (user_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    # tenants
    @staticmethod
    def _insert_tenant(conn, tenant: Tenant) -> None:
        conn.execute(
            "INSERT INTO tenant (id, name, slug, is_active, created_at) VALUES (%s, %s, %s, %s, %s)",
            (tenant.id, tenant.name, tenant.slug, tenant.is_active, tenant.created_at),
        )

    def create_tenant(self, tenant: Tenant) -> Tenant:
        try:
            with self._connect() as conn:
                self._insert_tenant(conn, tenant)
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE slug = %s", (slug,)).fetchone()
        return self._tenant_from_row(row) if row else None

    @staticmethod
    def _insert_membership(conn, membership: TenantMembership) -> None:
        conn.execute(
            """
            INSERT INTO tenant_membership (id, tenant_id, user_id, role, created_at)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (
                membership.id,
                membership.tenant_id,
                membership.user_id,
                membership.role,
                membership.created_at,
            ),
        )

    def add_membership(self, membership: TenantMembership) -> TenantMembership:
        try:
            with self._connect() as conn:
                self._insert_membership(conn, membership)
        except errors.UniqueViolation:
            raise ConstraintViolation("membership already exists", {"field": "membership"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "membership references missing row",
                {"tenant_id": membership.tenant_id, "user_id": membership.user_id},
            )
        return membership

    def get_membership(self, tenant_id: str, user_id: str) -> Optional[TenantMembership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_membership WHERE tenant_id = %s AND user_id = %s",
                (tenant_id, user_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def list_user_memberships(self, user_id: str) -> List[TenantMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tenant_membership WHERE user_id = %s ORDER BY created_at, id",
                (user_id,),
            ).fetchall()
        return [self._membership_from_row(row) for row in rows]

    def list_tenant_members(self, tenant_id: str) -> List[TenantMembership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tenant_membership WHERE tenant_id = %s ORDER BY created_at, id",
                (tenant_id,),
            ).fetchall()
        return [self._membership_from_row(row) for row in rows]

    def update_membership_role(
        self, tenant_id: str, user_id: str, role: str
    ) -> Optional[TenantMembership]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE tenant_membership SET role = %s WHERE tenant_id = %s AND user_id = %s RETURNING *",
                (role, tenant_id, user_id),
            ).fetchone()
        return self._membership_from_row(row) if row else None

    def remove_membership(self, tenant_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM tenant_membership WHERE tenant_id = %s AND user_id = %s RETURNING id",
                (tenant_id, user_id),
            ).fetchone()
        return row is not None

    def create_invitation(self, invitation: TenantInvitation) -> TenantInvitation:
        email = normalize_email(invitation.email)
        try:
            with self._connect() as conn, conn.transaction():
                # an expired invite no longer blocks a fresh one
                conn.execute(
                    """
                    UPDATE tenant_invitation SET cancelled_at = %s
                    WHERE tenant_id = %s AND email = %s AND accepted_at IS NULL
                      AND cancelled_at IS NULL AND expires_at <= %s
                    """,
                    (invitation.created_at, invitation.tenant_id, email, invitation.created_at),
                )
                row = conn.execute(
                    """
                    INSERT INTO tenant_invitation (id, tenant_id, email, role, token, invited_by,
                        expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        invitation.id,
                        invitation.tenant_id,
                        email,
                        invitation.role,
                        invitation.token,
                        invitation.invited_by,
                        invitation.expires_at,
                        invitation.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("invitation already pending", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": invitation.tenant_id})
        return self._invitation_from_row(row)

    def get_invitation_by_token(self, token: str) -> Optional[TenantInvitation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_invitation WHERE token = %s", (token,)
            ).fetchone()
        return self._invitation_from_row(row) if row else None

    def accept_invitation(
        self, token: str, user_id: str, *, now: datetime
    ) -> Optional[TenantMembership]:
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    UPDATE tenant_invitation SET accepted_at = %s, accepted_by = %s
                    WHERE token = %s AND accepted_at IS NULL AND cancelled_at IS NULL
                      AND expires_at > %s
                    RETURNING tenant_id, role
                    """,
                    (now, user_id, token, now),
                ).fetchone()
                if row is None:
                    return None
                membership = TenantMembership(
                    id=generate_uuid(),
                    tenant_id=str(row["tenant_id"]),
                    user_id=user_id,
                    role=row["role"],
                    created_at=now,
                )
                self._insert_membership(conn, membership)
        except errors.UniqueViolation:
            raise ConstraintViolation("membership already exists", {"field": "membership"})
        return membership

    def cancel_invitation(self, invitation_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE tenant_invitation SET cancelled_at = %s
                WHERE id = %s AND accepted_at IS NULL AND cancelled_at IS NULL
                RETURNING id
                """,
                (now, invitation_id),
            ).fetchone()
        return row is not None

    def list_pending_invitations(self, tenant_id: str, now: datetime) -> List[TenantInvitation]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tenant_invitation
                WHERE tenant_id = %s AND accepted_at IS NULL AND cancelled_at IS NULL
                  AND expires_at > %s
                ORDER BY created_at
                """,
                (tenant_id, now),
            ).fetchall()
        return [self._invitation_from_row(row) for row in rows]

    # system settings and audit
    def get_system_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute("SELECT name, value FROM system_setting").fetchall()
        return {row["name"]: row["value"] for row in rows}

    def set_system_setting(self, name: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO system_setting (name, value, updated_at) VALUES (%s, %s, now())
                ON CONFLICT (name) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                """,
                (name, json.dumps(value)),
            )

    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, event, actor_id, tenant_id, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.event,
                    event.actor_id,
                    event.tenant_id,
                    json.dumps(event.metadata, default=str) if event.metadata else None,
                    event.created_at,
                ),
            )
