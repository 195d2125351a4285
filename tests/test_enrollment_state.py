import pytest

from app.services.enrollment_state import (
    AWAITING_ALL_DATA,
    AWAITING_CAJA_SCHEDULE,
    AWAITING_INE_BACK,
    AWAITING_INE_FRONT,
    AWAITING_PAYMENT_METHOD,
    AWAITING_PAYMENT_PROOF,
    CANONICAL_FIELDS,
    COMPLETED,
    FIELD_QUESTIONS,
    NOT_STARTED,
    PENDING_IMPLEMENTATION,
    VALIDATING_DATA,
    CanonicalField,
    EnrollmentState,
    EnrollmentStatus,
    InvalidTransitionError,
    can_transition,
    collecting,
    first_missing,
    state_after_collection,
    transition,
)


class TestCanonicalFields:
    def test_ten_fields_in_fixed_order(self):
        assert [f.value for f in CANONICAL_FIELDS] == [
            "nombreCompleto",
            "fechaNacimiento",
            "curp",
            "email",
            "telefono",
            "nivelEducacion",
            "escuelaProcedencia",
            "contactoEmergencia1",
            "contactoEmergencia2",
            "nivelInscripcion",
        ]

    def test_every_field_has_a_question(self):
        assert set(FIELD_QUESTIONS) == set(CANONICAL_FIELDS)


class TestParse:
    def test_parses_plain_status(self):
        assert EnrollmentState.parse("awaiting_ine_front") == AWAITING_INE_FRONT

    def test_parses_collecting_tag(self):
        state = EnrollmentState.parse("collecting_curp")
        assert state.status is EnrollmentStatus.COLLECTING
        assert state.field is CanonicalField.CURP
        assert state.tag == "collecting_curp"

    @pytest.mark.parametrize("raw", [None, "", "bogus", "collecting_", "collecting_shoeSize", "collecting"])
    def test_unknown_values_map_to_not_started(self, raw):
        assert EnrollmentState.parse(raw) == NOT_STARTED

    def test_tag_round_trips_through_parse(self):
        state = collecting(CanonicalField.EMERGENCY_CONTACT_2)
        assert EnrollmentState.parse(state.tag) == state
        assert str(state) == "collecting_contactoEmergencia2"

    def test_field_required_only_for_collecting(self):
        with pytest.raises(ValueError):
            EnrollmentState(EnrollmentStatus.COLLECTING)
        with pytest.raises(ValueError):
            EnrollmentState(EnrollmentStatus.AWAITING_INE_FRONT, CanonicalField.CURP)


class TestActive:
    def test_entry_and_terminal_are_not_active(self):
        assert NOT_STARTED.is_active is False
        assert COMPLETED.is_active is False

    def test_flow_states_are_active(self):
        assert AWAITING_ALL_DATA.is_active
        assert collecting(CanonicalField.EMAIL).is_active
        assert PENDING_IMPLEMENTATION.is_active


class TestValidTransitions:
    def test_main_path(self):
        path = [
            NOT_STARTED,
            AWAITING_ALL_DATA,
            VALIDATING_DATA,
            collecting(CanonicalField.CURP),
            collecting(CanonicalField.EMAIL),
            AWAITING_INE_FRONT,
            AWAITING_INE_BACK,
            AWAITING_PAYMENT_METHOD,
            AWAITING_CAJA_SCHEDULE,
            COMPLETED,
        ]
        for current, nxt in zip(path, path[1:]):
            assert transition(current, nxt) == nxt

    def test_card_stub_can_switch_to_other_methods(self):
        assert transition(AWAITING_PAYMENT_METHOD, PENDING_IMPLEMENTATION) == PENDING_IMPLEMENTATION
        assert can_transition(PENDING_IMPLEMENTATION, AWAITING_PAYMENT_PROOF)
        assert can_transition(PENDING_IMPLEMENTATION, AWAITING_CAJA_SCHEDULE)

    def test_validating_can_skip_collection(self):
        assert can_transition(VALIDATING_DATA, AWAITING_INE_FRONT)


class TestInvalidTransitions:
    def test_backward_move_is_rejected(self):
        with pytest.raises(InvalidTransitionError):
            transition(AWAITING_INE_BACK, AWAITING_INE_FRONT)

    def test_skipping_id_verification_is_rejected(self):
        assert can_transition(VALIDATING_DATA, AWAITING_PAYMENT_METHOD) is False

    def test_completed_is_terminal(self):
        for target in (NOT_STARTED, AWAITING_ALL_DATA, AWAITING_PAYMENT_PROOF):
            assert can_transition(COMPLETED, target) is False

    def test_cannot_complete_without_payment_step(self):
        assert can_transition(AWAITING_PAYMENT_METHOD, COMPLETED) is False
        assert can_transition(PENDING_IMPLEMENTATION, COMPLETED) is False

    def test_error_names_both_states(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(COMPLETED, AWAITING_ALL_DATA)
        assert "completed -> awaiting_all_data" in str(exc_info.value)


class TestNextFieldSelection:
    def test_first_missing_uses_canonical_order(self):
        missing = [CanonicalField.ENROLLMENT_LEVEL, CanonicalField.EMAIL, CanonicalField.CURP]
        assert first_missing(missing) is CanonicalField.CURP

    def test_nothing_missing_goes_to_id_front(self):
        assert state_after_collection([]) == AWAITING_INE_FRONT

    def test_missing_field_goes_to_collecting(self):
        assert state_after_collection([CanonicalField.PHONE]) == collecting(CanonicalField.PHONE)
