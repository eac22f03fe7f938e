from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from admincore.logging import get_logger
from admincore.storage.common import (
    ensure_within_depth,
    normalize_email,
    subtree_ids,
    subtree_levels,
    validate_parent_chain,
)
from admincore.storage.errors import ConstraintViolation
from admincore.storage.models import (
    MENU_FLAGS,
    AuthorizationSnapshot,
    Menu,
    MenuType,
    Permission,
    PermissionAction,
    Role,
    RoleMenuPermission,
    User,
    UserGrants,
    UserMenuPermission,
    new_id,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS admin_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        phone_number TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        account_locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        display_name TEXT,
        description TEXT,
        is_system BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_permission (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        resource TEXT NOT NULL,
        action TEXT NOT NULL,
        display_name TEXT,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (resource, action)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_user_role (
        user_id TEXT NOT NULL REFERENCES admin_user(id) ON DELETE CASCADE,
        role_id TEXT NOT NULL REFERENCES admin_role(id) ON DELETE CASCADE,
        PRIMARY KEY (user_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_role_permission (
        role_id TEXT NOT NULL REFERENCES admin_role(id) ON DELETE CASCADE,
        permission_id TEXT NOT NULL REFERENCES admin_permission(id) ON DELETE CASCADE,
        PRIMARY KEY (role_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_menu (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        menu_type TEXT NOT NULL,
        display_name TEXT,
        url TEXT,
        icon TEXT,
        target_window TEXT NOT NULL DEFAULT '_self',
        sort_order INTEGER NOT NULL DEFAULT 0,
        parent_id TEXT REFERENCES admin_menu(id) ON DELETE CASCADE,
        menu_level INTEGER NOT NULL DEFAULT 0,
        is_visible BOOLEAN NOT NULL DEFAULT TRUE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_role_menu_permission (
        role_id TEXT NOT NULL REFERENCES admin_role(id) ON DELETE CASCADE,
        menu_id TEXT NOT NULL REFERENCES admin_menu(id) ON DELETE CASCADE,
        can_view BOOLEAN NOT NULL DEFAULT FALSE,
        can_access BOOLEAN NOT NULL DEFAULT FALSE,
        can_create BOOLEAN NOT NULL DEFAULT FALSE,
        can_update BOOLEAN NOT NULL DEFAULT FALSE,
        can_delete BOOLEAN NOT NULL DEFAULT FALSE,
        can_execute BOOLEAN NOT NULL DEFAULT FALSE,
        PRIMARY KEY (role_id, menu_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_user_menu_permission (
        user_id TEXT NOT NULL REFERENCES admin_user(id) ON DELETE CASCADE,
        menu_id TEXT NOT NULL REFERENCES admin_menu(id) ON DELETE CASCADE,
        can_view BOOLEAN,
        can_access BOOLEAN,
        can_create BOOLEAN,
        can_update BOOLEAN,
        can_delete BOOLEAN,
        can_execute BOOLEAN,
        is_override BOOLEAN NOT NULL DEFAULT FALSE,
        is_favorite BOOLEAN NOT NULL DEFAULT FALSE,
        PRIMARY KEY (user_id, menu_id)
    )
    """,
)

_USER_FIELDS = {
    "email",
    "first_name",
    "last_name",
    "phone_number",
    "is_active",
    "is_email_verified",
    "is_mfa_enabled",
}
_ROLE_FIELDS = {"name", "display_name", "description", "is_active"}
_PERMISSION_FIELDS = {"name", "resource", "action", "display_name", "description"}
_MENU_FIELDS = {
    "name",
    "menu_type",
    "display_name",
    "url",
    "icon",
    "target_window",
    "sort_order",
    "parent_id",
    "is_visible",
    "is_active",
}
_MENU_ORDER = "ORDER BY sort_order, id"


class PostgresStore:
    """Postgres-backed store for users, the RBAC catalog and the menu tree.

    Column names in the ``SET`` clauses below always come from the fixed
    ``_*_FIELDS`` allow-lists, never from callers.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=len(_SCHEMA))

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any], role_ids: Iterable[str] = ()) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            phone_number=row.get("phone_number"),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
            is_mfa_enabled=row.get("is_mfa_enabled", False),
            failed_login_attempts=row.get("failed_login_attempts", 0),
            account_locked_until=row.get("account_locked_until"),
            last_login_at=row.get("last_login_at"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            role_ids=set(role_ids),
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any], permission_ids: Iterable[str] = ()) -> Role:
        return Role(
            id=row["id"],
            name=row["name"],
            display_name=row.get("display_name"),
            description=row.get("description"),
            is_system=row.get("is_system", False),
            is_active=row.get("is_active", True),
            permission_ids=set(permission_ids),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=row["id"],
            name=row["name"],
            resource=row["resource"],
            action=PermissionAction(row["action"]),
            display_name=row.get("display_name"),
            description=row.get("description"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _menu_from_row(row: Dict[str, Any]) -> Menu:
        return Menu(
            id=row["id"],
            name=row["name"],
            menu_type=MenuType(row["menu_type"]),
            display_name=row.get("display_name"),
            url=row.get("url"),
            icon=row.get("icon"),
            target_window=row.get("target_window") or "_self",
            sort_order=row.get("sort_order", 0),
            parent_id=row.get("parent_id"),
            menu_level=row.get("menu_level", 0),
            is_visible=row.get("is_visible", True),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _role_menu_from_row(row: Dict[str, Any]) -> RoleMenuPermission:
        return RoleMenuPermission(
            role_id=row["role_id"],
            menu_id=row["menu_id"],
            **{flag: bool(row.get(flag)) for flag in MENU_FLAGS},
        )

    @staticmethod
    def _user_menu_from_row(row: Dict[str, Any]) -> UserMenuPermission:
        return UserMenuPermission(
            user_id=row["user_id"],
            menu_id=row["menu_id"],
            is_override=row.get("is_override", False),
            is_favorite=row.get("is_favorite", False),
            **{flag: row.get(flag) for flag in MENU_FLAGS},
        )

    # lookups shared by several methods; all take an open connection
    def _role_ids_for(self, conn, user_ids: List[str]) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = defaultdict(list)
        if not user_ids:
            return grouped
        rows = conn.execute(
            "SELECT user_id, role_id FROM admin_user_role WHERE user_id = ANY(%s)",
            (user_ids,),
        ).fetchall()
        for row in rows:
            grouped[row["user_id"]].append(row["role_id"])
        return grouped

    def _permission_ids_for(self, conn, role_ids: List[str]) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = defaultdict(list)
        if not role_ids:
            return grouped
        rows = conn.execute(
            "SELECT role_id, permission_id FROM admin_role_permission WHERE role_id = ANY(%s)",
            (role_ids,),
        ).fetchall()
        for row in rows:
            grouped[row["role_id"]].append(row["permission_id"])
        return grouped

    def _load_user(self, conn, row: Optional[Dict[str, Any]]) -> Optional[User]:
        if not row:
            return None
        role_ids = self._role_ids_for(conn, [row["id"]])
        return self._user_from_row(row, role_ids.get(row["id"], ()))

    def _load_users(self, conn, rows: List[Dict[str, Any]]) -> List[User]:
        role_ids = self._role_ids_for(conn, [row["id"] for row in rows])
        return [self._user_from_row(row, role_ids.get(row["id"], ())) for row in rows]

    def _load_roles(self, conn, rows: List[Dict[str, Any]]) -> List[Role]:
        permission_ids = self._permission_ids_for(conn, [row["id"] for row in rows])
        return [
            self._role_from_row(row, permission_ids.get(row["id"], ())) for row in rows
        ]

    def _grants_for(self, conn, user: User) -> Tuple[List[Role], List[Permission]]:
        role_rows = conn.execute(
            "SELECT * FROM admin_role WHERE id = ANY(%s) ORDER BY id",
            (sorted(user.role_ids),),
        ).fetchall()
        roles = self._load_roles(conn, role_rows)
        permission_rows = conn.execute(
            """
            SELECT DISTINCT p.* FROM admin_permission p
            JOIN admin_role_permission rp ON rp.permission_id = p.id
            WHERE rp.role_id = ANY(%s)
            ORDER BY p.id
            """,
            ([role.id for role in roles],),
        ).fetchall()
        return roles, [self._permission_from_row(row) for row in permission_rows]

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        is_active: bool = True,
        is_email_verified: bool = False,
        role_ids: Iterable[str] = (),
    ) -> User:
        user_id = new_id()
        normalized = normalize_email(email)
        role_set = sorted(set(role_ids))
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO admin_user (id, email, password_hash, first_name, last_name,
                        phone_number, is_active, is_email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalized,
                        password_hash,
                        first_name,
                        last_name,
                        phone_number,
                        is_active,
                        is_email_verified,
                    ),
                ).fetchone()
                for role_id in role_set:
                    conn.execute(
                        "INSERT INTO admin_user_role (user_id, role_id) VALUES (%s, %s)",
                        (user_id, role_id),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role not found", {"role_ids": role_set})
        return self._user_from_row(row, role_set)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_user WHERE id = %s", (user_id,)
            ).fetchone()
            return self._load_user(conn, row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
            return self._load_user(conn, row)

    def list_users(self, limit: int = 100, offset: int = 0) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM admin_user ORDER BY created_at, id LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
            return self._load_users(conn, rows)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        columns = sorted(fields)
        assignments = "".join(f"{column} = %s, " for column in columns)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE admin_user SET {assignments}updated_at = %s WHERE id = %s RETURNING *",
                    (*[fields[c] for c in columns], utcnow(), user_id),
                ).fetchone()
                return self._load_user(conn, row)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE admin_user SET password_hash = %s, updated_at = %s WHERE id = %s RETURNING id",
                (password_hash, utcnow(), user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def record_failed_login(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_duration: timedelta,
    ) -> Optional[User]:
        # single statement: concurrent failures each see the incremented count
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_user
                SET failed_login_attempts = failed_login_attempts + 1,
                    account_locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %s THEN %s
                        ELSE account_locked_until
                    END,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, now + lock_duration, now, user_id),
            ).fetchone()
            return self._load_user(conn, row)

    def record_successful_login(self, user_id: str, *, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_user
                SET failed_login_attempts = 0, account_locked_until = NULL,
                    last_login_at = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, now, user_id),
            ).fetchone()
            return self._load_user(conn, row)

    def clear_expired_lock(self, user_id: str, *, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE admin_user
                SET failed_login_attempts = 0, account_locked_until = NULL, updated_at = %s
                WHERE id = %s AND account_locked_until IS NOT NULL
                    AND account_locked_until <= %s
                """,
                (now, user_id, now),
            )
            row = conn.execute(
                "SELECT * FROM admin_user WHERE id = %s", (user_id,)
            ).fetchone()
            return self._load_user(conn, row)

    def unlock_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_user
                SET failed_login_attempts = 0, account_locked_until = NULL, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (utcnow(), user_id),
            ).fetchone()
            return self._load_user(conn, row)

    def add_user_role(self, user_id: str, role_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM admin_user WHERE id = %s FOR UPDATE", (user_id,)
                ).fetchone()
                if not row:
                    return None
                conn.execute(
                    """
                    INSERT INTO admin_user_role (user_id, role_id) VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (user_id, role_id),
                )
                conn.execute(
                    "UPDATE admin_user SET updated_at = %s WHERE id = %s",
                    (utcnow(), user_id),
                )
                return self._load_user(conn, row)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role not found", {"role_id": role_id})

    def remove_user_role(self, user_id: str, role_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE admin_user SET updated_at = %s WHERE id = %s RETURNING *",
                (utcnow(), user_id),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                "DELETE FROM admin_user_role WHERE user_id = %s AND role_id = %s",
                (user_id, role_id),
            )
            return self._load_user(conn, row)

    def list_users_with_role(self, role_id: str) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT u.* FROM admin_user u
                JOIN admin_user_role ur ON ur.user_id = u.id
                WHERE ur.role_id = %s
                ORDER BY u.email
                """,
                (role_id,),
            ).fetchall()
            return self._load_users(conn, rows)

    def get_user_grants(self, user_id: str) -> Optional[UserGrants]:
        with self._connect() as conn, conn.transaction():
            conn.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ")
            user = self._load_user(
                conn,
                conn.execute(
                    "SELECT * FROM admin_user WHERE id = %s", (user_id,)
                ).fetchone(),
            )
            if user is None:
                return None
            roles, permissions = self._grants_for(conn, user)
        return UserGrants(user=user, roles=roles, permissions=permissions)

    # roles
    def create_role(
        self,
        name: str,
        *,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        is_system: bool = False,
        is_active: bool = True,
        permission_ids: Iterable[str] = (),
    ) -> Role:
        role_id = new_id()
        perm_list = sorted(set(permission_ids))
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO admin_role (id, name, display_name, description, is_system, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (role_id, name, display_name, description, is_system, is_active),
                ).fetchone()
                for permission_id in perm_list:
                    conn.execute(
                        "INSERT INTO admin_role_permission (role_id, permission_id) VALUES (%s, %s)",
                        (role_id, permission_id),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "permission not found", {"permission_ids": perm_list}
            )
        return self._role_from_row(row, perm_list)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM admin_role WHERE id = %s", (role_id,)
            ).fetchall()
            roles = self._load_roles(conn, rows)
        return roles[0] if roles else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM admin_role WHERE name = %s", (name,)
            ).fetchall()
            roles = self._load_roles(conn, rows)
        return roles[0] if roles else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM admin_role ORDER BY name").fetchall()
            return self._load_roles(conn, rows)

    def update_role(self, role_id: str, **fields: Any) -> Optional[Role]:
        unknown = set(fields) - _ROLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported role fields: {sorted(unknown)}")
        columns = sorted(fields)
        assignments = "".join(f"{column} = %s, " for column in columns)
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"UPDATE admin_role SET {assignments}updated_at = %s WHERE id = %s RETURNING *",
                    (*[fields[c] for c in columns], utcnow(), role_id),
                ).fetchall()
                roles = self._load_roles(conn, rows)
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return roles[0] if roles else None

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM admin_role WHERE id = %s RETURNING id", (role_id,)
            ).fetchone()
        return row is not None

    def set_role_permissions(
        self, role_id: str, permission_ids: Iterable[str]
    ) -> Optional[Role]:
        perm_list = sorted(set(permission_ids))
        try:
            with self._connect() as conn, conn.transaction():
                rows = conn.execute(
                    "UPDATE admin_role SET updated_at = %s WHERE id = %s RETURNING *",
                    (utcnow(), role_id),
                ).fetchall()
                if not rows:
                    return None
                conn.execute(
                    "DELETE FROM admin_role_permission WHERE role_id = %s", (role_id,)
                )
                for permission_id in perm_list:
                    conn.execute(
                        "INSERT INTO admin_role_permission (role_id, permission_id) VALUES (%s, %s)",
                        (role_id, permission_id),
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "permission not found", {"permission_ids": perm_list}
            )
        return self._role_from_row(rows[0], perm_list)

    def remove_role_permission(self, role_id: str, permission_id: str) -> Optional[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                "UPDATE admin_role SET updated_at = %s WHERE id = %s RETURNING *",
                (utcnow(), role_id),
            ).fetchall()
            if not rows:
                return None
            conn.execute(
                "DELETE FROM admin_role_permission WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            )
            return self._load_roles(conn, rows)[0]

    # permissions
    @staticmethod
    def _permission_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        constraint = getattr(exc.diag, "constraint_name", None) or ""
        if "name" in constraint:
            return ConstraintViolation("permission name already exists", {"field": "name"})
        return ConstraintViolation(
            "permission for resource and action already exists",
            {"field": "resource_action"},
        )

    def create_permission(
        self,
        name: str,
        resource: str,
        action: PermissionAction,
        *,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Permission:
        action = PermissionAction(action)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO admin_permission (id, name, resource, action, display_name, description)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), name, resource, action.value, display_name, description),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._permission_violation(exc)
        return self._permission_from_row(row)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_permission WHERE name = %s", (name,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def get_permission_by_resource_action(
        self, resource: str, action: PermissionAction
    ) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_permission WHERE resource = %s AND action = %s",
                (resource, PermissionAction(action).value),
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self, resource: Optional[str] = None) -> List[Permission]:
        with self._connect() as conn:
            if resource is None:
                rows = conn.execute(
                    "SELECT * FROM admin_permission ORDER BY resource, action"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM admin_permission WHERE resource = %s ORDER BY action",
                    (resource,),
                ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def update_permission(self, permission_id: str, **fields: Any) -> Optional[Permission]:
        unknown = set(fields) - _PERMISSION_FIELDS
        if unknown:
            raise ValueError(f"unsupported permission fields: {sorted(unknown)}")
        if "action" in fields:
            fields["action"] = PermissionAction(fields["action"]).value
        if not fields:
            return self.get_permission(permission_id)
        columns = sorted(fields)
        assignments = ", ".join(f"{column} = %s" for column in columns)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE admin_permission SET {assignments} WHERE id = %s RETURNING *",
                    (*[fields[c] for c in columns], permission_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._permission_violation(exc)
        return self._permission_from_row(row) if row else None

    def delete_permission(self, permission_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM admin_permission WHERE id = %s RETURNING id", (permission_id,)
            ).fetchone()
        return row is not None

    # menus
    def _menu_graph(self, conn) -> Tuple[Dict[str, Optional[str]], Dict[str, List[str]]]:
        """Lock the menu table and return (parent map, ordered children map)."""
        conn.execute("LOCK TABLE admin_menu IN SHARE ROW EXCLUSIVE MODE")
        rows = conn.execute(
            f"SELECT id, parent_id FROM admin_menu {_MENU_ORDER}"
        ).fetchall()
        parents: Dict[str, Optional[str]] = {}
        children: Dict[str, List[str]] = defaultdict(list)
        for row in rows:
            parents[row["id"]] = row["parent_id"]
            if row["parent_id"] is not None:
                children[row["parent_id"]].append(row["id"])
        return parents, children

    def create_menu(
        self,
        name: str,
        *,
        menu_type: MenuType = MenuType.INTERNAL,
        display_name: Optional[str] = None,
        url: Optional[str] = None,
        icon: Optional[str] = None,
        target_window: str = "_self",
        sort_order: int = 0,
        parent_id: Optional[str] = None,
        is_visible: bool = True,
        is_active: bool = True,
        max_depth: Optional[int] = None,
    ) -> Menu:
        menu_id = new_id()
        with self._connect() as conn, conn.transaction():
            parents, _ = self._menu_graph(conn)
            if parent_id is not None and parent_id not in parents:
                raise ConstraintViolation("parent menu not found", {"parent_id": parent_id})
            level = validate_parent_chain(None, parent_id, parents.get, len(parents)) + 1
            ensure_within_depth({menu_id: level}, max_depth)
            row = conn.execute(
                """
                INSERT INTO admin_menu (id, name, menu_type, display_name, url, icon,
                    target_window, sort_order, parent_id, menu_level, is_visible, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    menu_id,
                    name,
                    MenuType(menu_type).value,
                    display_name,
                    url,
                    icon,
                    target_window,
                    sort_order,
                    parent_id,
                    level,
                    is_visible,
                    is_active,
                ),
            ).fetchone()
        return self._menu_from_row(row)

    def get_menu(self, menu_id: str) -> Optional[Menu]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_menu WHERE id = %s", (menu_id,)
            ).fetchone()
        return self._menu_from_row(row) if row else None

    def get_menu_by_url(self, url: str) -> Optional[Menu]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM admin_menu WHERE url = %s {_MENU_ORDER} LIMIT 1", (url,)
            ).fetchone()
        return self._menu_from_row(row) if row else None

    def list_menus(self) -> List[Menu]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM admin_menu ORDER BY menu_level, sort_order, id"
            ).fetchall()
        return [self._menu_from_row(row) for row in rows]

    def list_child_menus(self, menu_id: str) -> List[Menu]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM admin_menu WHERE parent_id = %s {_MENU_ORDER}", (menu_id,)
            ).fetchall()
        return [self._menu_from_row(row) for row in rows]

    def update_menu(
        self, menu_id: str, *, max_depth: Optional[int] = None, **fields: Any
    ) -> Optional[Menu]:
        unknown = set(fields) - _MENU_FIELDS
        if unknown:
            raise ValueError(f"unsupported menu fields: {sorted(unknown)}")
        if "menu_type" in fields:
            fields["menu_type"] = MenuType(fields["menu_type"]).value
        columns = sorted(fields)
        assignments = "".join(f"{column} = %s, " for column in columns)
        with self._connect() as conn, conn.transaction():
            parents, children = self._menu_graph(conn)
            if menu_id not in parents:
                return None
            levels: Dict[str, int] = {}
            if "parent_id" in fields:
                parent_id = fields["parent_id"]
                if parent_id is not None and parent_id not in parents:
                    raise ConstraintViolation(
                        "parent menu not found", {"parent_id": parent_id}
                    )
                parent_level = validate_parent_chain(
                    menu_id, parent_id, parents.get, len(parents)
                )
                levels = subtree_levels(
                    menu_id, parent_level + 1, lambda node: children.get(node, [])
                )
                ensure_within_depth(levels, max_depth)
            row = conn.execute(
                f"UPDATE admin_menu SET {assignments}updated_at = %s WHERE id = %s RETURNING *",
                (*[fields[c] for c in columns], utcnow(), menu_id),
            ).fetchone()
            for node_id, level in levels.items():
                conn.execute(
                    "UPDATE admin_menu SET menu_level = %s WHERE id = %s", (level, node_id)
                )
            if menu_id in levels:
                row = dict(row, menu_level=levels[menu_id])
        return self._menu_from_row(row)

    def delete_menu(self, menu_id: str) -> List[str]:
        with self._connect() as conn, conn.transaction():
            parents, children = self._menu_graph(conn)
            if menu_id not in parents:
                return []
            doomed = subtree_ids(menu_id, lambda node: children.get(node, []))
            # descendants and their permission records go via ON DELETE CASCADE
            conn.execute("DELETE FROM admin_menu WHERE id = %s", (menu_id,))
        return doomed

    # menu permission records
    def upsert_role_menu_permission(
        self, role_id: str, menu_id: str, **flags: bool
    ) -> RoleMenuPermission:
        unknown = set(flags) - set(MENU_FLAGS)
        if unknown:
            raise ValueError(f"unsupported menu flags: {sorted(unknown)}")
        columns = sorted(flags)
        insert_columns = "".join(f", {column}" for column in columns)
        placeholders = "".join(", %s" for _ in columns)
        updates = ", ".join(f"{column} = EXCLUDED.{column}" for column in columns)
        conflict = f"DO UPDATE SET {updates}" if columns else "DO NOTHING"
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO admin_role_menu_permission (role_id, menu_id{insert_columns})
                    VALUES (%s, %s{placeholders})
                    ON CONFLICT (role_id, menu_id) {conflict}
                    """,
                    (role_id, menu_id, *[bool(flags[c]) for c in columns]),
                )
                row = conn.execute(
                    "SELECT * FROM admin_role_menu_permission WHERE role_id = %s AND menu_id = %s",
                    (role_id, menu_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "role or menu not found", {"role_id": role_id, "menu_id": menu_id}
            )
        return self._role_menu_from_row(row)

    def delete_role_menu_permission(self, role_id: str, menu_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM admin_role_menu_permission WHERE role_id = %s AND menu_id = %s
                RETURNING role_id
                """,
                (role_id, menu_id),
            ).fetchone()
        return row is not None

    def list_role_menu_permissions(
        self, *, role_id: Optional[str] = None, menu_id: Optional[str] = None
    ) -> List[RoleMenuPermission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM admin_role_menu_permission
                WHERE (%s::text IS NULL OR role_id = %s)
                  AND (%s::text IS NULL OR menu_id = %s)
                ORDER BY role_id, menu_id
                """,
                (role_id, role_id, menu_id, menu_id),
            ).fetchall()
        return [self._role_menu_from_row(row) for row in rows]

    def save_user_menu_permission(self, record: UserMenuPermission) -> UserMenuPermission:
        columns = (*MENU_FLAGS, "is_override", "is_favorite")
        values = [getattr(record, column) for column in columns]
        updates = ", ".join(f"{column} = EXCLUDED.{column}" for column in columns)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO admin_user_menu_permission (user_id, menu_id, {", ".join(columns)})
                    VALUES (%s, %s, {", ".join("%s" for _ in columns)})
                    ON CONFLICT (user_id, menu_id) DO UPDATE SET {updates}
                    RETURNING *
                    """,
                    (record.user_id, record.menu_id, *values),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or menu not found",
                {"user_id": record.user_id, "menu_id": record.menu_id},
            )
        return self._user_menu_from_row(row)

    def get_user_menu_permission(
        self, user_id: str, menu_id: str
    ) -> Optional[UserMenuPermission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_user_menu_permission WHERE user_id = %s AND menu_id = %s",
                (user_id, menu_id),
            ).fetchone()
        return self._user_menu_from_row(row) if row else None

    def delete_user_menu_permission(self, user_id: str, menu_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM admin_user_menu_permission WHERE user_id = %s AND menu_id = %s
                RETURNING user_id
                """,
                (user_id, menu_id),
            ).fetchone()
        return row is not None

    def list_user_menu_permissions(self, user_id: str) -> List[UserMenuPermission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM admin_user_menu_permission WHERE user_id = %s ORDER BY menu_id",
                (user_id,),
            ).fetchall()
        return [self._user_menu_from_row(row) for row in rows]

    # authorization reads
    def _snapshots(
        self, conn, user: User, menus: List[Menu]
    ) -> List[AuthorizationSnapshot]:
        roles, permissions = self._grants_for(conn, user)
        menu_ids = [menu.id for menu in menus]
        role_records: Dict[str, List[RoleMenuPermission]] = defaultdict(list)
        for row in conn.execute(
            """
            SELECT * FROM admin_role_menu_permission
            WHERE role_id = ANY(%s) AND menu_id = ANY(%s)
            ORDER BY role_id
            """,
            ([role.id for role in roles], menu_ids),
        ).fetchall():
            role_records[row["menu_id"]].append(self._role_menu_from_row(row))
        overrides = {
            row["menu_id"]: self._user_menu_from_row(row)
            for row in conn.execute(
                """
                SELECT * FROM admin_user_menu_permission
                WHERE user_id = %s AND menu_id = ANY(%s)
                """,
                (user.id, menu_ids),
            ).fetchall()
        }
        return [
            AuthorizationSnapshot(
                user=user,
                roles=roles,
                permissions=permissions,
                menu=menu,
                user_override=overrides.get(menu.id),
                role_menu_permissions=role_records.get(menu.id, []),
            )
            for menu in menus
        ]

    def get_authorization_snapshot(
        self, user_id: str, menu_id: str
    ) -> Optional[AuthorizationSnapshot]:
        with self._connect() as conn, conn.transaction():
            conn.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ")
            user = self._load_user(
                conn,
                conn.execute(
                    "SELECT * FROM admin_user WHERE id = %s", (user_id,)
                ).fetchone(),
            )
            menu_row = conn.execute(
                "SELECT * FROM admin_menu WHERE id = %s", (menu_id,)
            ).fetchone()
            if user is None or menu_row is None:
                return None
            return self._snapshots(conn, user, [self._menu_from_row(menu_row)])[0]

    def list_authorization_snapshots(self, user_id: str) -> List[AuthorizationSnapshot]:
        with self._connect() as conn, conn.transaction():
            conn.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ")
            user = self._load_user(
                conn,
                conn.execute(
                    "SELECT * FROM admin_user WHERE id = %s", (user_id,)
                ).fetchone(),
            )
            if user is None:
                return []
            menus = [
                self._menu_from_row(row)
                for row in conn.execute(
                    f"SELECT * FROM admin_menu {_MENU_ORDER}"
                ).fetchall()
            ]
            return self._snapshots(conn, user, menus)

    def counts(self) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM admin_user) AS users,
                    (SELECT COUNT(*) FROM admin_role) AS roles,
                    (SELECT COUNT(*) FROM admin_permission) AS permissions,
                    (SELECT COUNT(*) FROM admin_menu) AS menus
                """
            ).fetchone()
        return {key: int(value) for key, value in row.items()}

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresStore"]
