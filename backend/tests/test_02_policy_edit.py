"""
Tests 201-224: Matrix and override mutations

Toggle idempotence, the super-role lock, override set/clear semantics, the
tri-state cycle and the no-empty-user invariant.  Every function must leave
its input untouched.
"""
import copy
import itertools

import pytest

from app.rbac import SUPER_ROLE, PermissionId, Role, UserId, default_matrix
from app.services.policy_edit import (
    cycle_user_override,
    normalize_matrix,
    normalize_overrides,
    set_user_override,
    toggle_role_permission,
)

P = PermissionId("EDIT_INCIDENT")
Q = PermissionId("DELETE_INCIDENT")
U = UserId("u-42")

EDITABLE_ROLES = [r for r in Role if r != SUPER_ROLE]


class TestToggleRolePermission:

    def test_201_adds_missing_role(self):
        matrix = {P: frozenset({Role.SUPERVISOR})}
        result = toggle_role_permission(matrix, Role.OPERADOR, P)
        assert result[P] == frozenset({Role.SUPERVISOR, Role.OPERADOR})

    def test_202_removes_present_role(self):
        matrix = {P: frozenset({Role.SUPERVISOR, Role.OPERADOR})}
        result = toggle_role_permission(matrix, Role.OPERADOR, P)
        assert result[P] == frozenset({Role.SUPERVISOR})

    def test_203_creates_key_for_unknown_permission(self):
        result = toggle_role_permission({}, Role.RONDA, PermissionId("BRAND_NEW"))
        assert result == {PermissionId("BRAND_NEW"): frozenset({Role.RONDA})}

    def test_204_last_role_removed_drops_key(self):
        matrix = {P: frozenset({Role.RONDA}), Q: frozenset({Role.RONDA})}
        result = toggle_role_permission(matrix, Role.RONDA, P)
        assert P not in result
        assert result[Q] == frozenset({Role.RONDA})

    def test_205_input_is_not_mutated(self):
        matrix = {P: frozenset({Role.SUPERVISOR})}
        snapshot = copy.deepcopy(matrix)
        toggle_role_permission(matrix, Role.OPERADOR, P)
        assert matrix == snapshot

    @pytest.mark.parametrize("role", EDITABLE_ROLES)
    @pytest.mark.parametrize("permission", [P, Q, PermissionId("UNLISTED")])
    def test_206_toggle_twice_is_identity(self, role, permission):
        matrix = default_matrix()
        once = toggle_role_permission(matrix, role, permission)
        assert once != matrix
        assert toggle_role_permission(once, role, permission) == matrix

    @pytest.mark.parametrize("permission", [P, PermissionId("UNLISTED")])
    def test_207_super_role_is_locked(self, permission):
        matrix = default_matrix()
        result = toggle_role_permission(matrix, SUPER_ROLE, permission)
        assert result is matrix

    def test_208_super_role_lock_on_empty_matrix(self):
        assert toggle_role_permission({}, SUPER_ROLE, P) == {}


class TestSetUserOverride:

    def test_209_set_allow(self):
        result = set_user_override({}, U, P, True)
        assert result == {U: {P: True}}

    def test_210_set_deny_replaces_allow(self):
        result = set_user_override({U: {P: True}}, U, P, False)
        assert result == {U: {P: False}}

    def test_211_clear_one_keeps_others(self):
        result = set_user_override({U: {P: True, Q: False}}, U, P, None)
        assert result == {U: {Q: False}}

    def test_212_clear_last_removes_user(self):
        result = set_user_override({U: {P: True}}, U, P, None)
        assert result == {}

    def test_213_clear_missing_entry_is_harmless(self):
        other = UserId("u-7")
        overrides = {other: {P: True}}
        assert set_user_override(overrides, U, P, None) == overrides

    def test_214_arbitrary_permission_ids_are_stored(self):
        result = set_user_override({}, U, PermissionId("not a catalog id"), True)
        assert result[U] == {PermissionId("not a catalog id"): True}

    def test_215_input_is_not_mutated(self):
        overrides = {U: {P: True}}
        snapshot = copy.deepcopy(overrides)
        set_user_override(overrides, U, Q, False)
        set_user_override(overrides, U, P, None)
        assert overrides == snapshot

    def test_216_no_empty_user_after_any_sequence(self):
        """Exhaustive short sequences over two users and two permissions."""
        users = [U, UserId("u-7")]
        steps = list(itertools.product(users, [P, Q], [True, False, None]))
        for a, b, c in itertools.product(steps, repeat=3):
            overrides = {}
            for user_id, permission, value in (a, b, c):
                overrides = set_user_override(overrides, user_id, permission, value)
                assert all(entries for entries in overrides.values())


class TestCycleUserOverride:

    def test_217_inherit_to_allow(self):
        assert cycle_user_override({}, U, P) == {U: {P: True}}

    def test_218_allow_to_deny(self):
        assert cycle_user_override({U: {P: True}}, U, P) == {U: {P: False}}

    def test_219_deny_to_inherit_removes_user(self):
        assert cycle_user_override({U: {P: False}}, U, P) == {}

    def test_220_three_steps_return_to_start(self):
        overrides = {U: {Q: True}}
        result = overrides
        for _ in range(3):
            result = cycle_user_override(result, U, P)
        assert result == overrides


class TestNormalize:

    def test_221_canonical_matrix_is_returned_as_is(self):
        matrix = default_matrix()
        assert normalize_matrix(matrix) is matrix

    def test_222_empty_role_sets_are_dropped(self):
        matrix = {P: frozenset(), Q: frozenset({Role.RONDA})}
        assert normalize_matrix(matrix) == {Q: frozenset({Role.RONDA})}
        assert P in matrix

    def test_223_toggle_twice_on_empty_entry_needs_normalizing(self):
        """An empty entry and a missing key grant the same thing."""
        matrix = {P: frozenset()}
        twice = toggle_role_permission(toggle_role_permission(matrix, Role.RONDA, P), Role.RONDA, P)
        assert twice != matrix
        assert twice == normalize_matrix(matrix)

    def test_224_empty_override_users_are_dropped(self):
        overrides = {U: {}, UserId("u-7"): {P: False}}
        assert normalize_overrides(overrides) == {UserId("u-7"): {P: False}}
        canonical = {U: {P: True}}
        assert normalize_overrides(canonical) is canonical
