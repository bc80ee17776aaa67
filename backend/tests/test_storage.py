import os
import tempfile
import unittest
from datetime import datetime, timedelta
from unittest import mock

import config
import storage
from models import TaxProfile


class StorageTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        patcher = mock.patch.object(config, "DB_PATH", os.path.join(self.tmpdir.name, "test.db"))
        patcher.start()
        self.addCleanup(patcher.stop)
        storage.init_db()

    def expire_room(self, room_id: str) -> None:
        past = (storage.utc_now() - timedelta(minutes=1)).isoformat()
        with storage.get_db_conn() as conn:
            conn.execute("UPDATE rooms SET expires_at = ? WHERE id = ?", (past, room_id))


class RoomLifecycleTests(StorageTestCase):
    def test_create_room_seeds_defaults(self) -> None:
        room = storage.create_room("alice", "Alice", room_name="Dinner", currency="inr")
        self.assertEqual(len(room.code), config.ROOM_CODE_LENGTH)
        self.assertTrue(set(room.code) <= set(config.ROOM_CODE_ALPHABET))
        self.assertEqual(room.currency, "INR")
        self.assertEqual(room.status, "active")
        self.assertEqual(room.created_by, "alice")
        self.assertEqual(room.participant_ids(), ["alice"])
        self.assertEqual([p.id for p in room.tax_profiles], ["general", "special", "luxe"])
        self.assertEqual([p.rate for p in room.tax_profiles], [6, 18, 40])
        self.assertFalse(any(p.is_global for p in room.tax_profiles))

    def test_lookup_by_code_is_case_insensitive(self) -> None:
        room = storage.create_room("alice", "Alice")
        self.assertEqual(storage.fetch_room_by_code(f"  {room.code.lower()} ").id, room.id)
        self.assertIsNone(storage.fetch_room_by_code("NOPE1234"))

    def test_join_is_idempotent(self) -> None:
        room = storage.create_room("alice", "Alice")
        storage.join_room(room.id, "bob", "Bob", is_guest=True)
        joined = storage.join_room(room.id, "bob", "Bobby")
        self.assertEqual(joined.participant_ids(), ["alice", "bob"])
        self.assertEqual(joined.participants[1].display_name, "Bob")
        self.assertTrue(joined.participants[1].is_guest)
        self.assertIsNone(storage.join_room("missing", "bob", "Bob"))

    def test_leave_keeps_selections_and_expires_empty_room(self) -> None:
        room = storage.create_room("alice", "Alice")
        storage.join_room(room.id, "bob", "Bob")
        item = storage.add_item(room.id, "Pizza", 20, "alice")
        storage.toggle_selection(room.id, item.id, "bob")

        self.assertTrue(storage.leave_room(room.id, "bob"))
        self.assertFalse(storage.leave_room(room.id, "bob"))
        after = storage.fetch_room(room.id)
        self.assertEqual(after.participant_ids(), ["alice"])
        self.assertEqual([p.user_id for p in after.left_participants], ["bob"])
        self.assertIsNone(after.expires_at)
        self.assertEqual(storage.fetch_item(room.id, item.id).selected_by, ["bob"])

        storage.leave_room(room.id, "alice")
        empty = storage.fetch_room(room.id)
        expires_at = datetime.fromisoformat(empty.expires_at)
        delta = expires_at - storage.utc_now()
        self.assertTrue(timedelta(minutes=config.EMPTY_ROOM_TTL_MINUTES - 1) < delta)
        self.assertTrue(delta <= timedelta(minutes=config.EMPTY_ROOM_TTL_MINUTES))

    def test_rejoin_clears_expiry(self) -> None:
        room = storage.create_room("alice", "Alice")
        storage.leave_room(room.id, "alice")
        rejoined = storage.join_room(room.id, "alice", "Alice")
        self.assertIsNone(rejoined.expires_at)
        self.assertEqual(rejoined.participant_ids(), ["alice"])
        self.assertEqual(rejoined.left_participants, [])

    def test_rename_participant(self) -> None:
        room = storage.create_room("alice", "Alice")
        self.assertTrue(storage.rename_participant(room.id, "alice", "Ally"))
        self.assertFalse(storage.rename_participant(room.id, "zed", "Zed"))
        self.assertEqual(storage.fetch_room(room.id).participants[0].display_name, "Ally")

    def test_all_submitted_completes_room(self) -> None:
        room = storage.create_room("alice", "Alice")
        storage.join_room(room.id, "bob", "Bob")

        partial = storage.set_submission(room.id, "alice", True)
        self.assertEqual(partial.status, "active")
        self.assertIsNone(partial.expires_at)

        done = storage.set_submission(room.id, "bob", True)
        self.assertEqual(done.status, "completed")
        delta = datetime.fromisoformat(done.expires_at) - storage.utc_now()
        self.assertTrue(timedelta(days=config.COMPLETED_ROOM_TTL_DAYS - 1) < delta)

        reopened = storage.set_submission(room.id, "bob", False)
        self.assertEqual(reopened.status, "active")
        self.assertIsNone(reopened.expires_at)
        self.assertIsNone(storage.set_submission(room.id, "zed", True))

    def test_expired_room_is_gone(self) -> None:
        room = storage.create_room("alice", "Alice")
        self.expire_room(room.id)
        self.assertIsNone(storage.fetch_room(room.id))
        self.assertIsNone(storage.fetch_room_by_code(room.code))
        self.assertEqual(storage.purge_expired_rooms(), 1)
        self.assertEqual(storage.purge_expired_rooms(), 0)

    def test_list_user_rooms(self) -> None:
        first = storage.create_room("alice", "Alice", room_name="First")
        second = storage.create_room("bob", "Bob", room_name="Second")
        storage.join_room(second.id, "alice", "Alice")
        gone = storage.create_room("alice", "Alice", room_name="Gone")
        self.expire_room(gone.id)

        rooms = storage.list_user_rooms("alice")
        self.assertEqual([r.id for r in rooms], [second.id, first.id])
        self.assertEqual([r.id for r in storage.list_user_rooms("bob")], [second.id])
        self.assertIsNone(storage.fetch_room(gone.id))

    def test_delete_room_removes_everything(self) -> None:
        room = storage.create_room("alice", "Alice")
        item = storage.add_item(room.id, "Tea", 3, "alice")
        storage.toggle_selection(room.id, item.id, "alice")
        storage.delete_room(room.id)
        self.assertIsNone(storage.fetch_room(room.id))
        self.assertEqual(storage.fetch_items(room.id), [])


class ItemStorageTests(StorageTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.room = storage.create_room("alice", "Alice")

    def test_items_get_sequential_ids_in_order(self) -> None:
        first = storage.add_item(self.room.id, "Soup", 8.5, "alice")
        second = storage.add_item(self.room.id, "Bread", 2, "alice", quantity=3, tax_profile_id="general")
        self.assertEqual((first.id, second.id), ("itm_1", "itm_2"))
        items = storage.fetch_items(self.room.id)
        self.assertEqual([i.name for i in items], ["Soup", "Bread"])
        self.assertEqual(items[1].quantity, 3)
        self.assertEqual(items[1].tax_profile_id, "general")

    def test_ids_not_reused_after_delete(self) -> None:
        storage.add_item(self.room.id, "Soup", 8.5, "alice")
        second = storage.add_item(self.room.id, "Bread", 2, "alice")
        storage.add_item(self.room.id, "Salad", 6, "alice")
        self.assertTrue(storage.delete_item(self.room.id, second.id))
        self.assertFalse(storage.delete_item(self.room.id, second.id))
        self.assertEqual(storage.add_item(self.room.id, "Cake", 5, "alice").id, "itm_4")

    def test_toggle_selection(self) -> None:
        item = storage.add_item(self.room.id, "Soup", 8.5, "alice")
        self.assertTrue(storage.toggle_selection(self.room.id, item.id, "alice"))
        self.assertTrue(storage.toggle_selection(self.room.id, item.id, "bob"))
        self.assertEqual(storage.fetch_item(self.room.id, item.id).selected_by, ["alice", "bob"])
        self.assertFalse(storage.toggle_selection(self.room.id, item.id, "alice"))
        self.assertEqual(storage.fetch_item(self.room.id, item.id).selected_by, ["bob"])

    def test_delete_item_drops_selections(self) -> None:
        item = storage.add_item(self.room.id, "Soup", 8.5, "alice")
        storage.toggle_selection(self.room.id, item.id, "alice")
        storage.delete_item(self.room.id, item.id)
        with storage.get_db_conn() as conn:
            count = conn.execute("SELECT COUNT(*) FROM item_selections").fetchone()[0]
        self.assertEqual(count, 0)

    def test_room_settings(self) -> None:
        item = storage.add_item(self.room.id, "Soup", 8.5, "alice")
        self.assertTrue(storage.set_item_tax_profile(self.room.id, item.id, "luxe"))
        self.assertFalse(storage.set_item_tax_profile(self.room.id, "itm_99", "luxe"))
        storage.set_service_tax_rate(self.room.id, 12.5)
        storage.set_currency(self.room.id, "eur")
        storage.save_tax_profiles(self.room.id, [TaxProfile(id="vat", name="VAT", rate=20, is_global=True)])

        room = storage.fetch_room(self.room.id)
        self.assertEqual(room.service_tax_rate, 12.5)
        self.assertEqual(room.currency, "EUR")
        self.assertEqual([(p.id, p.is_global) for p in room.tax_profiles], [("vat", True)])
        self.assertEqual(storage.fetch_item(self.room.id, item.id).tax_profile_id, "luxe")


if __name__ == "__main__":
    unittest.main()
