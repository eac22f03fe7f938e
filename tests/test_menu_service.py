"""Tests for menu tree administration and menu permission records."""

import pytest

from admincore.service.errors import MenuHierarchyError, NotFoundError, ValidationError
from admincore.storage.models import MenuType


@pytest.fixture
def chain(runtime):
    """root -> middle -> leaf"""
    root = runtime.menus.create_menu("root")
    middle = runtime.menus.create_menu("middle", parent_id=root.id)
    leaf = runtime.menus.create_menu("leaf", parent_id=middle.id)
    return root, middle, leaf


class TestHierarchy:
    """Tests for parent assignment, levels, and depth."""

    def test_levels_follow_parent(self, chain):
        root, middle, leaf = chain

        assert (root.menu_level, middle.menu_level, leaf.menu_level) == (0, 1, 2)

    def test_self_parent_rejected(self, runtime, chain):
        root, _, _ = chain

        with pytest.raises(MenuHierarchyError) as exc_info:
            runtime.menus.update_menu(root.id, {"parent_id": root.id})

        assert exc_info.value.error_code == "menu_hierarchy_invalid"

    def test_descendant_parent_rejected(self, runtime, chain):
        root, _, leaf = chain

        with pytest.raises(MenuHierarchyError):
            runtime.menus.update_menu(root.id, {"parent_id": leaf.id})

        assert runtime.menus.get_menu(root.id).parent_id is None

    def test_move_recomputes_subtree_levels(self, runtime, chain):
        root, middle, leaf = chain
        other = runtime.menus.create_menu("other")
        deeper = runtime.menus.create_menu("deeper", parent_id=other.id)

        runtime.menus.update_menu(middle.id, {"parent_id": deeper.id})

        assert runtime.menus.get_menu(middle.id).menu_level == 2
        assert runtime.menus.get_menu(leaf.id).menu_level == 3

    def test_move_to_root(self, runtime, chain):
        _, middle, leaf = chain

        moved = runtime.menus.update_menu(middle.id, {"parent_id": None})

        assert moved.parent_id is None
        assert moved.menu_level == 0
        assert runtime.menus.get_menu(leaf.id).menu_level == 1

    def test_depth_limit_on_create(self, runtime):
        parent_id = None
        for depth in range(runtime.settings.menu_max_depth):
            parent_id = runtime.menus.create_menu(f"m{depth}", parent_id=parent_id).id

        with pytest.raises(MenuHierarchyError):
            runtime.menus.create_menu("too-deep", parent_id=parent_id)

    def test_depth_limit_on_move(self, runtime, chain):
        root, _, _ = chain
        parent_id = None
        for depth in range(runtime.settings.menu_max_depth - 1):
            parent_id = runtime.menus.create_menu(f"m{depth}", parent_id=parent_id).id

        with pytest.raises(MenuHierarchyError):
            runtime.menus.update_menu(root.id, {"parent_id": parent_id})

        assert runtime.menus.get_menu(root.id).menu_level == 0

    def test_unknown_parent(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.menus.create_menu("orphan", parent_id="missing")

    def test_unknown_field_rejected(self, runtime, chain):
        root, _, _ = chain

        with pytest.raises(ValidationError):
            runtime.menus.update_menu(root.id, {"menu_level": 5})

    def test_unknown_menu_type(self, runtime):
        with pytest.raises(ValidationError):
            runtime.menus.create_menu("bad", menu_type="SIDEBAR")

    def test_menu_type_is_case_insensitive(self, runtime):
        assert runtime.menus.create_menu("ext", menu_type="external").menu_type == MenuType.EXTERNAL


class TestDelete:
    """Tests for subtree deletion."""

    def test_delete_removes_subtree_and_records(self, runtime, make_user, chain):
        root, middle, leaf = chain
        user = make_user()
        role = runtime.store.get_role_by_name("ROLE_USER")
        runtime.menus.grant_role_menu_permission(role.id, leaf.id, {"can_view": True})
        runtime.menus.toggle_favorite(user.id, leaf.id)

        removed = runtime.menus.delete_menu(middle.id)

        assert set(removed) == {middle.id, leaf.id}
        assert runtime.store.get_menu(root.id) is not None
        assert runtime.store.get_menu(leaf.id) is None
        assert runtime.menus.list_role_menu_permissions(menu_id=leaf.id) == []
        assert runtime.menus.list_favorites(user.id) == []

    def test_delete_unknown(self, runtime):
        with pytest.raises(NotFoundError):
            runtime.menus.delete_menu("missing")


class TestTrees:
    """Tests for the full and per-user menu trees."""

    def test_seeded_tree_shape(self, runtime):
        tree = runtime.menus.menu_tree()

        assert [node.menu.name for node in tree] == ["dashboard", "system"]
        system = tree[1]
        assert [node.menu.name for node in system.children] == [
            "users",
            "roles",
            "menus",
            "settings",
        ]

    def test_hidden_parent_hides_subtree(self, runtime):
        system = next(m for m in runtime.store.list_menus() if m.name == "system")
        runtime.menus.update_menu(system.id, {"is_visible": False})

        tree = runtime.menus.menu_tree()

        assert [node.menu.name for node in tree] == ["dashboard"]

    def test_user_tree_omits_unviewable(self, runtime, make_user):
        user = make_user()

        tree = runtime.menus.user_menu_tree(user.id)

        system = next(node for node in tree if node.menu.name == "system")
        assert "settings" not in [node.menu.name for node in system.children]
        assert all(node.permissions is not None for node in tree)

    def test_admin_tree_has_everything(self, runtime, make_user):
        admin = make_user("boss@x.com", roles=["ROLE_ADMIN"])

        tree = runtime.menus.user_menu_tree(admin.id)

        system = next(node for node in tree if node.menu.name == "system")
        assert "settings" in [node.menu.name for node in system.children]
        assert system.permissions.can_delete is True


class TestRecords:
    """Tests for role menu records, overrides, and favorites."""

    def test_grant_is_upsert(self, runtime, chain):
        root, _, _ = chain
        role = runtime.store.get_role_by_name("ROLE_USER")

        runtime.menus.grant_role_menu_permission(role.id, root.id, {"can_view": True})
        record = runtime.menus.grant_role_menu_permission(
            role.id, root.id, {"can_access": True}
        )

        assert record.can_view is True
        assert record.can_access is True
        assert len(runtime.menus.list_role_menu_permissions(role_id=role.id)) == 1

    def test_unknown_flag_rejected(self, runtime, chain):
        root, _, _ = chain
        role = runtime.store.get_role_by_name("ROLE_USER")

        with pytest.raises(ValidationError):
            runtime.menus.grant_role_menu_permission(role.id, root.id, {"can_fly": True})

    def test_revoke_missing_record(self, runtime, chain):
        root, _, _ = chain
        role = runtime.store.get_role_by_name("ROLE_USER")

        with pytest.raises(NotFoundError):
            runtime.menus.revoke_role_menu_permission(role.id, root.id)

    def test_copy_role_menu_permissions(self, runtime, chain):
        root, middle, _ = chain
        user_role = runtime.store.get_role_by_name("ROLE_USER")
        manager_role = runtime.store.get_role_by_name("ROLE_MANAGER")
        runtime.menus.grant_role_menu_permission(user_role.id, root.id, {"can_view": True})
        runtime.menus.grant_role_menu_permission(
            manager_role.id, root.id, {"can_update": True}
        )

        copied = runtime.menus.copy_role_menu_permissions(root.id, middle.id)

        target = runtime.menus.list_role_menu_permissions(menu_id=middle.id)
        assert copied == 2
        assert {(r.role_id, r.can_view, r.can_update) for r in target} == {
            (user_role.id, True, False),
            (manager_role.id, False, True),
        }

    def test_override_keeps_favorite(self, runtime, make_user, chain):
        root, _, _ = chain
        user = make_user()
        runtime.menus.toggle_favorite(user.id, root.id)

        record = runtime.menus.set_user_override(user.id, root.id, {"can_view": False})

        assert record.is_favorite is True
        assert record.can_view is False
        assert record.can_access is None

    def test_clear_override_keeps_favorite(self, runtime, make_user, chain):
        root, _, _ = chain
        user = make_user()
        runtime.menus.toggle_favorite(user.id, root.id)
        runtime.menus.set_user_override(user.id, root.id, {"can_view": False})

        runtime.menus.clear_user_override(user.id, root.id)

        record = runtime.menus.get_user_menu_record(user.id, root.id)
        assert record.is_favorite is True
        assert record.is_override is False

    def test_clear_missing_override(self, runtime, make_user, chain):
        root, _, _ = chain
        user = make_user()

        with pytest.raises(NotFoundError):
            runtime.menus.clear_user_override(user.id, root.id)

    def test_toggle_favorite_round(self, runtime, make_user, chain):
        root, middle, _ = chain
        user = make_user()

        assert runtime.menus.toggle_favorite(user.id, middle.id) is True
        assert runtime.menus.toggle_favorite(user.id, root.id) is True
        assert [m.id for m in runtime.menus.list_favorites(user.id)] == sorted([root.id, middle.id])
        assert runtime.menus.toggle_favorite(user.id, root.id) is False
        assert [m.id for m in runtime.menus.list_favorites(user.id)] == [middle.id]
        assert runtime.menus.get_user_menu_record(user.id, root.id) is None
