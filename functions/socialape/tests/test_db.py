import threading
import time
import unittest

from sqlalchemy import update

from socialape.db import (
    EventKind,
    EventStatus,
    InMemoryDbClient,
    NotificationRecord,
    PostgresDbClient,
    ScreamRow,
)
from socialape.errors import ConflictError, NotFoundError


class DbClientContract:
    """Checks shared by every DbClient implementation."""

    def make_db(self):
        raise NotImplementedError

    def setUp(self):
        self.db = self.make_db()
        self.db.create_user("ape", "uid-ape", "ape@example.com", "https://img/no-img.png")
        self.db.create_user("monkey", "uid-monkey", "monkey@example.com", "https://img/no-img.png")
        self.scream = self.db.create_scream("ape", "Hello apes", "https://img/no-img.png")

    def test_create_user_rejects_taken_handle(self):
        with self.assertRaises(ConflictError) as ctx:
            self.db.create_user("ape", "uid-other", "other@example.com", "url")
        self.assertEqual(ctx.exception.body, {"handle": "Handle is already taken"})

    def test_get_user_by_uid(self):
        self.assertEqual(self.db.get_user_by_uid("uid-monkey").handle, "monkey")
        self.assertIsNone(self.db.get_user_by_uid("uid-missing"))

    def test_update_user_details_keeps_unset_fields(self):
        self.db.update_user_details("ape", {"bio": "Hi", "location": "Jungle"})
        self.db.update_user_details("ape", {"website": "http://ape.com"})
        user = self.db.get_user("ape")
        self.assertEqual(
            (user.bio, user.website, user.location), ("Hi", "http://ape.com", "Jungle")
        )

    def test_update_user_image_appends_event_with_previous_url(self):
        event = self.db.update_user_image("ape", "https://img/new.png")
        self.assertEqual(event.kind, EventKind.USER_IMAGE_CHANGED)
        self.assertEqual(event.payload["previous_image_url"], "https://img/no-img.png")
        self.assertEqual(self.db.get_user("ape").image_url, "https://img/new.png")
        self.assertIsNone(self.db.update_user_image("ape", "https://img/new.png"))

    def test_like_increments_count_once(self):
        scream, event = self.db.like_scream(self.scream.scream_id, "monkey")
        self.assertEqual(scream.like_count, 1)
        self.assertEqual(event.kind, EventKind.LIKE_CREATED)
        self.assertEqual(event.status, EventStatus.PENDING)

        with self.assertRaises(ConflictError) as ctx:
            self.db.like_scream(self.scream.scream_id, "monkey")
        self.assertEqual(ctx.exception.body, {"error": "Scream is already liked"})
        self.assertEqual(self.db.get_scream(self.scream.scream_id).like_count, 1)
        self.assertEqual(len(self.db.list_likes_by_user("monkey")), 1)

    def test_unlike_without_like_changes_nothing(self):
        with self.assertRaises(ConflictError) as ctx:
            self.db.unlike_scream(self.scream.scream_id, "monkey")
        self.assertEqual(ctx.exception.body, {"error": "Scream not liked"})
        self.assertEqual(self.db.get_scream(self.scream.scream_id).like_count, 0)

    def test_unlike_removes_like_and_decrements(self):
        _, liked = self.db.like_scream(self.scream.scream_id, "monkey")
        scream, event = self.db.unlike_scream(self.scream.scream_id, "monkey")
        self.assertEqual(scream.like_count, 0)
        self.assertEqual(event.kind, EventKind.LIKE_DELETED)
        self.assertEqual(event.payload["like_id"], liked.payload["like_id"])
        self.assertIsNone(self.db.get_like(liked.payload["like_id"]))

    def test_like_missing_scream(self):
        with self.assertRaises(NotFoundError):
            self.db.like_scream("missing", "monkey")

    def test_add_comment_increments_count(self):
        comment, event = self.db.add_comment(
            self.scream.scream_id, "monkey", "Nice", "https://img/no-img.png"
        )
        self.assertEqual(event.payload["comment_id"], comment.comment_id)
        self.assertEqual(self.db.get_scream(self.scream.scream_id).comment_count, 1)
        self.assertEqual(
            [c.comment_id for c in self.db.list_comments(self.scream.scream_id)],
            [comment.comment_id],
        )

    def test_add_comment_to_missing_scream(self):
        with self.assertRaises(NotFoundError):
            self.db.add_comment("missing", "monkey", "Nice", "url")
        self.assertEqual(self.db.list_comments("missing"), [])

    def test_screams_listed_newest_first(self):
        time.sleep(0.002)
        second = self.db.create_scream("monkey", "Second", "url")
        self.assertEqual(
            [s.scream_id for s in self.db.list_screams()],
            [second.scream_id, self.scream.scream_id],
        )
        self.assertEqual(
            [s.scream_id for s in self.db.list_screams_by_user("monkey")],
            [second.scream_id],
        )

    def test_delete_scream_then_dependents(self):
        scream_id = self.scream.scream_id
        _, like_event = self.db.like_scream(scream_id, "monkey")
        comment, _ = self.db.add_comment(scream_id, "monkey", "Nice", "url")
        self.db.save_notification(
            NotificationRecord(
                notification_id=like_event.payload["like_id"],
                recipient="ape",
                sender="monkey",
                type="like",
                scream_id=scream_id,
            )
        )

        event = self.db.delete_scream(scream_id)
        self.assertEqual(event.kind, EventKind.SCREAM_DELETED)
        self.assertIsNone(self.db.get_scream(scream_id))

        self.assertEqual(self.db.delete_scream_dependents(scream_id), 3)
        self.assertIsNone(self.db.get_comment(comment.comment_id))
        self.assertIsNone(self.db.get_like(like_event.payload["like_id"]))
        self.assertIsNone(self.db.get_notification(like_event.payload["like_id"]))
        self.assertEqual(self.db.delete_scream_dependents(scream_id), 0)

    def test_delete_missing_scream(self):
        with self.assertRaises(NotFoundError):
            self.db.delete_scream("missing")

    def test_save_notification_is_an_upsert(self):
        notification = NotificationRecord(
            notification_id="n1",
            recipient="ape",
            sender="monkey",
            type="like",
            scream_id=self.scream.scream_id,
        )
        self.db.save_notification(notification)
        self.db.save_notification(notification)
        self.assertEqual(len(self.db.list_notifications("ape")), 1)

    def test_list_notifications_respects_limit(self):
        for index in range(3):
            self.db.save_notification(
                NotificationRecord(
                    notification_id=f"n{index}",
                    recipient="ape",
                    sender="monkey",
                    type="comment",
                    scream_id=self.scream.scream_id,
                )
            )
        self.assertEqual(len(self.db.list_notifications("ape", limit=2)), 2)
        self.assertEqual(self.db.list_notifications("monkey"), [])

    def test_mark_notifications_read_is_all_or_nothing(self):
        self.db.save_notification(
            NotificationRecord(
                notification_id="n1",
                recipient="ape",
                sender="monkey",
                type="like",
                scream_id=self.scream.scream_id,
            )
        )
        with self.assertRaises(NotFoundError):
            self.db.mark_notifications_read(["n1", "missing"], "ape")
        self.assertFalse(self.db.get_notification("n1").read)

        with self.assertRaises(NotFoundError):
            self.db.mark_notifications_read(["n1"], "monkey")

        self.db.mark_notifications_read(["n1"], "ape")
        self.assertTrue(self.db.get_notification("n1").read)

    def test_delete_notification(self):
        self.db.save_notification(
            NotificationRecord(
                notification_id="n1",
                recipient="ape",
                sender="monkey",
                type="like",
                scream_id=self.scream.scream_id,
            )
        )
        self.assertTrue(self.db.delete_notification("n1"))
        self.assertFalse(self.db.delete_notification("n1"))

    def test_propagate_user_image(self):
        self.db.add_comment(self.scream.scream_id, "ape", "Me", "https://img/no-img.png")
        self.db.add_comment(self.scream.scream_id, "monkey", "Other", "https://img/monkey.png")

        self.assertEqual(self.db.propagate_user_image("ape", "https://img/new.png"), 2)
        self.assertEqual(
            self.db.get_scream(self.scream.scream_id).user_image, "https://img/new.png"
        )
        images = {c.user_handle: c.user_image for c in self.db.list_comments(self.scream.scream_id)}
        self.assertEqual(images, {"ape": "https://img/new.png", "monkey": "https://img/monkey.png"})

    def test_notify_scream_owner_creates_notification_once(self):
        _, event = self.db.like_scream(self.scream.scream_id, "monkey")
        like_id = event.payload["like_id"]
        kwargs = dict(
            source_id=like_id,
            scream_id=self.scream.scream_id,
            sender="monkey",
            notification_type="like",
        )

        self.assertTrue(self.db.notify_scream_owner(**kwargs))
        self.db.mark_notifications_read([like_id], "ape")
        self.assertTrue(self.db.notify_scream_owner(**kwargs))

        notifications = self.db.list_notifications("ape")
        self.assertEqual([n.notification_id for n in notifications], [like_id])
        self.assertEqual(notifications[0].type, "like")
        self.assertTrue(notifications[0].read)

    def test_notify_scream_owner_skips_removed_like(self):
        _, event = self.db.like_scream(self.scream.scream_id, "monkey")
        self.db.unlike_scream(self.scream.scream_id, "monkey")
        created = self.db.notify_scream_owner(
            source_id=event.payload["like_id"],
            scream_id=self.scream.scream_id,
            sender="monkey",
            notification_type="like",
        )
        self.assertFalse(created)
        self.assertEqual(self.db.list_notifications("ape"), [])

    def test_notify_scream_owner_skips_deleted_scream(self):
        comment, _ = self.db.add_comment(self.scream.scream_id, "monkey", "Nice", "url")
        self.db.delete_scream(self.scream.scream_id)
        created = self.db.notify_scream_owner(
            source_id=comment.comment_id,
            scream_id=self.scream.scream_id,
            sender="monkey",
            notification_type="comment",
        )
        self.assertFalse(created)
        self.assertEqual(self.db.list_notifications("ape"), [])

    def test_notify_scream_owner_skips_self_interaction(self):
        comment, _ = self.db.add_comment(self.scream.scream_id, "ape", "Me", "url")
        created = self.db.notify_scream_owner(
            source_id=comment.comment_id,
            scream_id=self.scream.scream_id,
            sender="ape",
            notification_type="comment",
        )
        self.assertFalse(created)
        self.assertIsNone(self.db.get_notification(comment.comment_id))

    def test_outbox_claim_done(self):
        _, event = self.db.like_scream(self.scream.scream_id, "monkey")
        claimed = self.db.claim_event(event.event_id)
        self.assertEqual(claimed.status, EventStatus.CLAIMED)
        self.assertIsNone(self.db.claim_event(event.event_id))
        self.assertIsNone(self.db.claim_next_pending_event())

        self.db.mark_event_done(event.event_id)
        self.assertEqual(self.db.get_event(event.event_id).status, EventStatus.DONE)

    def test_outbox_claims_oldest_first(self):
        _, first = self.db.like_scream(self.scream.scream_id, "monkey")
        _, second = self.db.add_comment(self.scream.scream_id, "monkey", "Hi", "url")
        self.assertEqual(self.db.claim_next_pending_event().event_id, first.event_id)
        self.assertEqual(self.db.claim_next_pending_event().event_id, second.event_id)

    def test_outbox_failure_retries_until_max_attempts(self):
        _, event = self.db.like_scream(self.scream.scream_id, "monkey")

        self.db.claim_event(event.event_id)
        self.db.mark_event_failed(event.event_id, "boom", max_attempts=2)
        stored = self.db.get_event(event.event_id)
        self.assertEqual((stored.status, stored.attempts), (EventStatus.PENDING, 1))

        self.db.claim_event(event.event_id)
        self.db.mark_event_failed(event.event_id, "boom again", max_attempts=2)
        stored = self.db.get_event(event.event_id)
        self.assertEqual((stored.status, stored.attempts), (EventStatus.FAILED, 2))
        self.assertEqual(stored.last_error, "boom again")
        self.assertIsNone(self.db.claim_event(event.event_id))

    def test_requeue_stale_events(self):
        _, event = self.db.like_scream(self.scream.scream_id, "monkey")
        self.db.claim_event(event.event_id)
        self.assertEqual(self.db.requeue_stale_events(lock_timeout_seconds=600), 0)

        time.sleep(0.01)
        self.assertEqual(self.db.requeue_stale_events(lock_timeout_seconds=0.001), 1)
        self.assertEqual(self.db.get_event(event.event_id).status, EventStatus.PENDING)


class InMemoryDbClientTests(DbClientContract, unittest.TestCase):
    def make_db(self):
        return InMemoryDbClient()

    def test_recount_fixes_drifted_counters(self):
        self.db.like_scream(self.scream.scream_id, "monkey")
        self.db.add_comment(self.scream.scream_id, "monkey", "Hi", "url")
        self.db.screams[self.scream.scream_id].like_count = 7
        self.db.screams[self.scream.scream_id].comment_count = 0

        self.assertEqual(self.db.recount_scream_counters(), 1)
        scream = self.db.get_scream(self.scream.scream_id)
        self.assertEqual((scream.like_count, scream.comment_count), (1, 1))
        self.assertEqual(self.db.recount_scream_counters(), 0)

    def test_returned_records_are_copies(self):
        scream = self.db.get_scream(self.scream.scream_id)
        scream.like_count = 99
        self.assertEqual(self.db.get_scream(self.scream.scream_id).like_count, 0)

    def test_lookup_by_uid_during_concurrent_signups(self):
        errors = []

        def sign_up(start):
            for index in range(start, start + 200):
                self.db.create_user(f"ape{index}", f"uid-{index}", "ape@example.com", "url")

        def look_up():
            try:
                for _ in range(200):
                    self.db.get_user_by_uid("uid-missing")
            except RuntimeError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=sign_up, args=(n * 1000,)) for n in range(2)]
        threads += [threading.Thread(target=look_up) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(self.db.get_user_by_uid("uid-1199").handle, "ape1199")



class PostgresDbClientTests(DbClientContract, unittest.TestCase):
    """Runs against SQLite so the suite needs no database server."""

    def make_db(self):
        return PostgresDbClient("sqlite+pysqlite:///:memory:")

    def test_recount_fixes_drifted_counters(self):
        self.db.like_scream(self.scream.scream_id, "monkey")
        with self.db.Session() as session:
            session.execute(
                update(ScreamRow)
                .where(ScreamRow.id == self.scream.scream_id)
                .values(like_count=5, comment_count=2)
            )
            session.commit()

        self.assertEqual(self.db.recount_scream_counters(), 1)
        scream = self.db.get_scream(self.scream.scream_id)
        self.assertEqual((scream.like_count, scream.comment_count), (1, 0))

    def test_event_payload_round_trips_as_json(self):
        _, event = self.db.like_scream(self.scream.scream_id, "monkey")
        stored = self.db.get_event(event.event_id)
        self.assertEqual(stored.payload, event.payload)
        self.assertEqual(stored.kind, EventKind.LIKE_CREATED)


if __name__ == "__main__":
    unittest.main()
