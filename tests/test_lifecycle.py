import unittest
from datetime import timedelta
from unittest import mock

from space_reservations import (
    ConflictError,
    ForbiddenError,
    FormatError,
    NotFoundError,
    ReservationCreate,
    ReservationFilter,
    ReservationLifecycleManager,
    ReservationState,
    ReservationUpdate,
    Role,
    TimeRange,
    UnauthorizedError,
    ValidationError,
    ValidationResult,
    WriteConflictError,
)

from tests.fixtures import (
    TODAY,
    add_reservation,
    add_space,
    add_user,
    fixed_clock,
    make_store,
    principal_for,
)

TOMORROW = TODAY + timedelta(days=1)
YESTERDAY = TODAY - timedelta(days=1)


class LifecycleTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.store = make_store()
        self.admin = add_user(self.store, "Admin", "admin@example.edu", Role.ADMINISTRATOR)
        self.coordinator = add_user(self.store, "Carla Coordinator", "carla@example.edu", Role.COORDINATOR)
        self.teacher = add_user(self.store, "Tomas Teacher", "tomas@example.edu", Role.TEACHER)
        self.other_teacher = add_user(self.store, "Ursula Teacher", "ursula@example.edu", Role.TEACHER)
        self.room_a = add_space(self.store, "Room A", capacity=30)
        self.room_b = add_space(self.store, "Room B", capacity=20)

        self.manager = ReservationLifecycleManager(self.store, now_provider=fixed_clock)
        self.as_admin = principal_for(self.admin)
        self.as_coordinator = principal_for(self.coordinator)
        self.as_teacher = principal_for(self.teacher)
        self.as_other_teacher = principal_for(self.other_teacher)

    def tearDown(self) -> None:
        self.store.dispose()

    def book(self, principal, space, time_range: str, day=TOMORROW, user=None):
        owner_id = principal.id if user is None else user.id
        return self.manager.create(
            principal,
            ReservationCreate(user_id=owner_id, space_id=space.id, date=day, time_range=time_range),
        )


class TestCreateReservation(LifecycleTestCase):
    def test_new_reservation_is_pending_and_logged(self) -> None:
        created = self.book(self.as_teacher, self.room_a, "08:00-09:00")

        self.assertEqual(created.state, ReservationState.PENDING)
        self.assertEqual(created.user_id, self.teacher.id)
        self.assertEqual(created.time_range, "08:00-09:00")
        events = self.store.list_events("RESERVATION_CREATED")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["payload"]["reservation_id"], created.id)

    def test_time_range_is_stored_in_canonical_form(self) -> None:
        created = self.book(self.as_teacher, self.room_a, " 08:00 - 09:30 ")
        self.assertEqual(created.time_range, "08:00-09:30")

    def test_booking_for_someone_else_is_forbidden_before_other_checks(self) -> None:
        with self.assertRaises(ForbiddenError):
            self.manager.create(
                self.as_teacher,
                ReservationCreate(user_id=self.other_teacher.id, space_id=9999, date=YESTERDAY, time_range="bad"),
            )

    def test_coordinator_cannot_book_for_another_user_either(self) -> None:
        with self.assertRaises(ForbiddenError):
            self.book(self.as_coordinator, self.room_a, "08:00-09:00", user=self.teacher)

    def test_anonymous_caller_is_unauthorized(self) -> None:
        with self.assertRaises(UnauthorizedError):
            self.manager.create(
                None,
                ReservationCreate(user_id=self.teacher.id, space_id=self.room_a.id, date=TOMORROW, time_range="08:00-09:00"),
            )

    def test_unknown_space_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.manager.create(
                self.as_teacher,
                ReservationCreate(user_id=self.teacher.id, space_id=9999, date=TOMORROW, time_range="08:00-09:00"),
            )

    def test_unavailable_space_is_rejected(self) -> None:
        closed = add_space(self.store, "Closed Lab", available=False)
        with self.assertRaises(ValidationError):
            self.book(self.as_teacher, closed, "08:00-09:00")

    def test_invalid_time_range_is_rejected(self) -> None:
        with self.assertRaises(FormatError):
            self.book(self.as_teacher, self.room_a, "08:00")

    def test_past_date_is_rejected_but_today_is_allowed(self) -> None:
        with self.assertRaises(ValidationError):
            self.book(self.as_teacher, self.room_a, "10:00-11:00", day=YESTERDAY)

        created = self.book(self.as_teacher, self.room_a, "10:00-11:00", day=TODAY)
        self.assertEqual(created.date, TODAY)

    def test_overly_long_description_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.manager.create(
                self.as_teacher,
                ReservationCreate(
                    user_id=self.teacher.id,
                    space_id=self.room_a.id,
                    date=TOMORROW,
                    time_range="08:00-09:00",
                    description="x" * 501,
                ),
            )

    def test_touching_ranges_are_both_accepted(self) -> None:
        self.book(self.as_teacher, self.room_a, "09:00-10:00")
        second = self.book(self.as_other_teacher, self.room_a, "10:00-11:00")
        self.assertEqual(second.state, ReservationState.PENDING)

    def test_overlapping_range_on_same_space_conflicts(self) -> None:
        self.book(self.as_teacher, self.room_a, "09:00-10:00")

        with self.assertRaises(ConflictError) as raised:
            self.book(self.as_other_teacher, self.room_a, "09:30-10:30")

        self.assertIn("Tomas Teacher", raised.exception.message)
        self.assertIn("Pending", raised.exception.message)
        self.assertEqual(len(self.manager.list_reservations(self.as_admin)), 1)

    def test_user_cannot_be_in_two_spaces_at_once(self) -> None:
        self.book(self.as_teacher, self.room_a, "09:00-10:00")

        with self.assertRaises(ConflictError) as raised:
            self.book(self.as_teacher, self.room_b, "09:30-10:00")

        self.assertIn("Room A", raised.exception.message)

    def test_rejected_reservation_does_not_block_same_slot(self) -> None:
        add_reservation(self.store, self.other_teacher, self.room_a, TOMORROW, "09:00-10:00", ReservationState.REJECTED)

        created = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        self.assertEqual(created.state, ReservationState.PENDING)


class TestUpdateReservation(LifecycleTestCase):
    def test_teacher_cannot_change_owner(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        with self.assertLogs("space_reservations.lifecycle", level="WARNING") as logs:
            updated = self.manager.update(
                self.as_teacher,
                reservation.id,
                ReservationUpdate(user_id=self.other_teacher.id, description="Exam review"),
            )

        self.assertEqual(updated.user_id, self.teacher.id)
        self.assertEqual(updated.description, "Exam review")
        self.assertIn("Ignoring owner change", logs.output[0])

    def test_teacher_cannot_update_someone_elses_reservation(self) -> None:
        reservation = self.book(self.as_other_teacher, self.room_a, "09:00-10:00")

        with self.assertRaises(ForbiddenError):
            self.manager.update(self.as_teacher, reservation.id, ReservationUpdate(description="mine now"))

    def test_teacher_cannot_set_state(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        updated = self.manager.update(
            self.as_teacher, reservation.id, ReservationUpdate(state=ReservationState.APPROVED)
        )

        self.assertEqual(updated.state, ReservationState.PENDING)

    def test_coordinator_moving_approved_reservation_resets_to_pending(self) -> None:
        approved = add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "09:00-10:00", ReservationState.APPROVED)

        updated = self.manager.update(self.as_coordinator, approved.id, ReservationUpdate(space_id=self.room_b.id))

        self.assertEqual(updated.space_id, self.room_b.id)
        self.assertEqual(updated.state, ReservationState.PENDING)

    def test_administrator_moving_approved_reservation_keeps_approval(self) -> None:
        approved = add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "09:00-10:00", ReservationState.APPROVED)

        updated = self.manager.update(self.as_admin, approved.id, ReservationUpdate(space_id=self.room_b.id))

        self.assertEqual(updated.space_id, self.room_b.id)
        self.assertEqual(updated.state, ReservationState.APPROVED)

    def test_teacher_retiming_approved_reservation_resets_to_pending(self) -> None:
        approved = add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "09:00-10:00", ReservationState.APPROVED)

        updated = self.manager.update(self.as_teacher, approved.id, ReservationUpdate(time_range="10:00-11:00"))

        self.assertEqual(updated.time_range, "10:00-11:00")
        self.assertEqual(updated.state, ReservationState.PENDING)

    def test_same_range_in_other_spelling_is_not_a_change(self) -> None:
        approved = add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "09:00-10:00", ReservationState.APPROVED)

        updated = self.manager.update(self.as_teacher, approved.id, ReservationUpdate(time_range=" 09:00 - 10:00 "))

        self.assertEqual(updated.state, ReservationState.APPROVED)

    def test_owner_only_change_keeps_approval(self) -> None:
        approved = add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "09:00-10:00", ReservationState.APPROVED)

        updated = self.manager.update(self.as_coordinator, approved.id, ReservationUpdate(user_id=self.other_teacher.id))

        self.assertEqual(updated.user_id, self.other_teacher.id)
        self.assertEqual(updated.state, ReservationState.APPROVED)

    def test_reassigning_to_busy_user_conflicts(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")
        self.book(self.as_other_teacher, self.room_b, "09:30-10:30")

        with self.assertRaises(ConflictError):
            self.manager.update(self.as_coordinator, reservation.id, ReservationUpdate(user_id=self.other_teacher.id))

    def test_reassigning_to_unknown_user_is_not_found(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        with self.assertRaises(NotFoundError):
            self.manager.update(self.as_coordinator, reservation.id, ReservationUpdate(user_id=9999))

    def test_reservation_does_not_conflict_with_itself(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        updated = self.manager.update(self.as_teacher, reservation.id, ReservationUpdate(time_range="09:30-10:30"))

        self.assertEqual(updated.time_range, "09:30-10:30")

    def test_update_into_occupied_slot_conflicts_and_keeps_stored_values(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")
        self.book(self.as_other_teacher, self.room_b, "09:00-10:00")

        with self.assertRaises(ConflictError):
            self.manager.update(self.as_teacher, reservation.id, ReservationUpdate(space_id=self.room_b.id))

        stored = self.manager.get(self.as_teacher, reservation.id)
        self.assertEqual(stored.space_id, self.room_a.id)

    def test_moving_to_past_date_is_rejected(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        with self.assertRaises(ValidationError):
            self.manager.update(self.as_teacher, reservation.id, ReservationUpdate(date=YESTERDAY))

    def test_moving_to_unavailable_space_is_rejected(self) -> None:
        closed = add_space(self.store, "Closed Lab", available=False)
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        with self.assertRaises(ValidationError):
            self.manager.update(self.as_teacher, reservation.id, ReservationUpdate(space_id=closed.id))

    def test_mismatched_ids_are_rejected(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        with self.assertRaises(ValidationError):
            self.manager.update(self.as_teacher, reservation.id, ReservationUpdate(id=reservation.id + 1))

    def test_administrator_can_assign_state_directly(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        updated = self.manager.update(self.as_admin, reservation.id, ReservationUpdate(state=ReservationState.REJECTED))

        self.assertEqual(updated.state, ReservationState.REJECTED)
        events = self.store.list_events("RESERVATION_UPDATED")
        self.assertEqual(events[-1]["payload"]["previous_state"], "Pending")

    def test_coordinator_state_assignment_is_ignored(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        updated = self.manager.update(
            self.as_coordinator, reservation.id, ReservationUpdate(state=ReservationState.APPROVED)
        )

        self.assertEqual(updated.state, ReservationState.PENDING)

    def test_reopening_rejected_reservation_checks_space_overlap(self) -> None:
        rejected = add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "08:00-09:00", ReservationState.REJECTED)
        add_reservation(self.store, self.other_teacher, self.room_a, TOMORROW, "08:30-09:30")

        with self.assertRaises(ConflictError) as raised:
            self.manager.update(self.as_admin, rejected.id, ReservationUpdate(state=ReservationState.APPROVED))

        self.assertIn("Space conflict", raised.exception.message)
        self.assertEqual(self.manager.get(self.as_admin, rejected.id).state, ReservationState.REJECTED)

    def test_reopening_rejected_reservation_into_taken_slot_names_the_holder(self) -> None:
        rejected = add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "08:00-09:00", ReservationState.REJECTED)
        add_reservation(self.store, self.other_teacher, self.room_a, TOMORROW, "08:00-09:00")

        with self.assertRaises(ConflictError) as raised:
            self.manager.update(self.as_admin, rejected.id, ReservationUpdate(state=ReservationState.PENDING))

        self.assertIn("Space conflict", raised.exception.message)
        self.assertIn("Ursula Teacher", raised.exception.message)

    def test_reopening_rejected_reservation_checks_owner_overlap(self) -> None:
        rejected = add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "08:00-09:00", ReservationState.REJECTED)
        add_reservation(self.store, self.teacher, self.room_b, TOMORROW, "08:30-09:30")

        with self.assertRaises(ConflictError) as raised:
            self.manager.update(self.as_admin, rejected.id, ReservationUpdate(state=ReservationState.PENDING))

        self.assertIn("User conflict", raised.exception.message)

    def test_reopening_rejected_reservation_into_free_slot(self) -> None:
        rejected = add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "08:00-09:00", ReservationState.REJECTED)
        add_reservation(self.store, self.other_teacher, self.room_a, TOMORROW, "09:00-10:00")

        updated = self.manager.update(self.as_admin, rejected.id, ReservationUpdate(state=ReservationState.APPROVED))

        self.assertEqual(updated.state, ReservationState.APPROVED)


class TestReviewReservation(LifecycleTestCase):
    def test_only_administrators_review(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        with self.assertRaises(ForbiddenError):
            self.manager.approve(self.as_coordinator, reservation.id)
        with self.assertRaises(ForbiddenError):
            self.manager.reject(self.as_teacher, reservation.id)

    def test_approve_then_reapprove_conflicts(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        approved = self.manager.approve(self.as_admin, reservation.id)
        self.assertEqual(approved.state, ReservationState.APPROVED)

        with self.assertRaises(ConflictError):
            self.manager.approve(self.as_admin, reservation.id)
        with self.assertRaises(ConflictError):
            self.manager.reject(self.as_admin, reservation.id)

    def test_reject_pending_reservation(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        rejected = self.manager.reject(self.as_admin, reservation.id)

        self.assertEqual(rejected.state, ReservationState.REJECTED)
        self.assertEqual(len(self.store.list_events("RESERVATION_REJECTED")), 1)

    def test_unknown_reservation_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.manager.approve(self.as_admin, 9999)


class TestDeleteReservation(LifecycleTestCase):
    def test_teacher_deletes_own_pending_reservation(self) -> None:
        reservation = self.book(self.as_teacher, self.room_a, "09:00-10:00")

        self.manager.delete(self.as_teacher, reservation.id)

        with self.assertRaises(NotFoundError):
            self.manager.get(self.as_admin, reservation.id)
        self.assertEqual(len(self.store.list_events("RESERVATION_DELETED")), 1)

    def test_teacher_cannot_delete_other_reservations(self) -> None:
        reservation = self.book(self.as_other_teacher, self.room_a, "09:00-10:00")

        with self.assertRaises(ForbiddenError):
            self.manager.delete(self.as_teacher, reservation.id)

    def test_teacher_cannot_delete_approved_reservation(self) -> None:
        approved = add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "09:00-10:00", ReservationState.APPROVED)

        with self.assertRaises(ForbiddenError):
            self.manager.delete(self.as_teacher, approved.id)

    def test_coordinator_deletes_future_approved_reservation(self) -> None:
        approved = add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "09:00-10:00", ReservationState.APPROVED)

        deleted = self.manager.delete(self.as_coordinator, approved.id)

        self.assertEqual(deleted.id, approved.id)

    def test_past_approved_reservation_needs_administrator(self) -> None:
        past = add_reservation(self.store, self.teacher, self.room_a, YESTERDAY, "09:00-10:00", ReservationState.APPROVED)

        with self.assertRaises(ForbiddenError):
            self.manager.delete(self.as_coordinator, past.id)

        self.manager.delete(self.as_admin, past.id)
        self.assertEqual(self.manager.list_reservations(self.as_admin), [])

    def test_past_rejected_reservation_is_deletable_by_owner(self) -> None:
        past = add_reservation(self.store, self.teacher, self.room_a, YESTERDAY, "09:00-10:00", ReservationState.REJECTED)

        self.manager.delete(self.as_teacher, past.id)

        self.assertEqual(self.manager.list_reservations(self.as_teacher), [])


class TestReadReservations(LifecycleTestCase):
    def test_teacher_sees_only_own_reservations(self) -> None:
        mine = self.book(self.as_teacher, self.room_a, "09:00-10:00")
        theirs = self.book(self.as_other_teacher, self.room_b, "09:00-10:00")

        listed = self.manager.list_reservations(self.as_teacher, ReservationFilter(user_id=self.other_teacher.id))

        self.assertEqual([item.id for item in listed], [mine.id])
        with self.assertRaises(ForbiddenError):
            self.manager.get(self.as_teacher, theirs.id)

    def test_coordinator_filters_all_reservations(self) -> None:
        first = self.book(self.as_teacher, self.room_a, "09:00-10:00")
        second = self.book(self.as_other_teacher, self.room_b, "09:00-10:00")
        self.manager.approve(self.as_admin, second.id)

        everything = self.manager.list_reservations(self.as_coordinator)
        pending = self.manager.list_reservations(self.as_coordinator, ReservationFilter(state=ReservationState.PENDING))
        in_room_b = self.manager.list_reservations(self.as_coordinator, ReservationFilter(space_id=self.room_b.id))
        next_week = self.manager.list_reservations(
            self.as_coordinator, ReservationFilter(date_from=TODAY + timedelta(days=7))
        )

        self.assertEqual({item.id for item in everything}, {first.id, second.id})
        self.assertEqual([item.id for item in pending], [first.id])
        self.assertEqual([item.id for item in in_room_b], [second.id])
        self.assertEqual(next_week, [])
        self.assertEqual(everything[0].space.name, "Room A")


class TestLostWriteRace(LifecycleTestCase):
    def test_lost_race_is_reported_as_the_winning_conflict(self) -> None:
        def write():
            raise WriteConflictError("unique slot violated")

        def recheck(_checker):
            return ValidationResult(False, "Space conflict: taken.", 7)

        with self.assertRaises(ConflictError) as raised:
            self.manager._write_with_recheck(write, recheck)

        self.assertEqual(raised.exception.message, "Space conflict: taken.")

    def test_lost_race_without_visible_conflict_still_conflicts(self) -> None:
        def write():
            raise WriteConflictError("database is locked")

        with self.assertRaises(ConflictError):
            self.manager._write_with_recheck(write, lambda _checker: ValidationResult.valid())

    def test_store_reports_duplicate_active_slot_as_write_conflict(self) -> None:
        add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "08:00-09:00")

        with self.assertRaises(WriteConflictError):
            add_reservation(self.store, self.other_teacher, self.room_a, TOMORROW, "08:00-09:00")

    def test_losing_insert_reports_the_reservation_that_holds_the_slot(self) -> None:
        add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "08:00-09:00")

        def write():
            return add_reservation(self.store, self.other_teacher, self.room_a, TOMORROW, "08:00-09:00")

        def recheck(checker):
            return checker.check_space_conflict(self.room_a.id, TOMORROW, TimeRange.parse("08:00-09:00"))

        with self.assertRaises(ConflictError) as raised:
            self.manager._write_with_recheck(write, recheck)

        self.assertIn("Space conflict", raised.exception.message)
        self.assertIn("Tomas Teacher", raised.exception.message)
        self.assertEqual(len(self.manager.list_reservations(self.as_admin, ReservationFilter())), 1)

    def test_update_losing_at_flush_reports_the_reservation_that_holds_the_slot(self) -> None:
        add_reservation(self.store, self.teacher, self.room_a, TOMORROW, "08:00-09:00")
        moving = add_reservation(self.store, self.other_teacher, self.room_a, TOMORROW, "09:00-10:00")

        # Let the write reach the unique slot index as if the holder committed after the checks ran.
        with mock.patch("space_reservations.lifecycle._raise_on_conflict"):
            with self.assertRaises(ConflictError) as raised:
                self.manager.update(self.as_admin, moving.id, ReservationUpdate(time_range="08:00-09:00"))

        self.assertIn("Space conflict", raised.exception.message)
        self.assertIn("Tomas Teacher", raised.exception.message)
        self.assertEqual(self.manager.get(self.as_admin, moving.id).time_range, "09:00-10:00")


class TestEndToEndFlow(LifecycleTestCase):
    def test_booking_review_flow(self) -> None:
        first = self.book(self.as_teacher, self.room_a, "08:00-09:00")
        self.assertEqual(first.state, ReservationState.PENDING)

        with self.assertRaises(ConflictError) as raised:
            self.book(self.as_other_teacher, self.room_a, "08:30-09:30")
        self.assertIn("Space conflict", raised.exception.message)

        approved = self.manager.approve(self.as_admin, first.id)
        self.assertEqual(approved.state, ReservationState.APPROVED)

        with self.assertRaises(ConflictError):
            self.manager.approve(self.as_admin, first.id)


if __name__ == "__main__":
    unittest.main()
