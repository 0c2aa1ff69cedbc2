import unittest

from hospital_billing.errors import NotFoundError, TransactionConflictError
from hospital_billing.store import MemoryStore, matches, strip_unset, to_mongo_filter, where


class MemoryStoreTest(unittest.TestCase):
    """Test the in-memory document store"""

    def setUp(self):
        self.store = MemoryStore()
        self.store.set("beds", "b1", {"number": "101", "status": "available"})
        self.store.set("beds", "b2", {"number": "102", "status": "occupied", "patientId": "p1"})

    def test_get_returns_copy_with_id(self):
        """Test get returns the id and a copy of the document"""
        doc = self.store.get("beds", "b1")
        self.assertEqual(doc, {"id": "b1", "number": "101", "status": "available"})
        doc["status"] = "occupied"
        self.assertEqual(self.store.get("beds", "b1")["status"], "available")

    def test_get_missing(self):
        """Test get on a missing document"""
        self.assertIsNone(self.store.get("beds", "nope"))

    def test_update_merges_fields(self):
        """Test update only touches the given fields"""
        self.store.update("beds", "b1", {"status": "maintenance"})
        self.assertEqual(self.store.get("beds", "b1"), {"id": "b1", "number": "101", "status": "maintenance"})

    def test_update_missing_raises(self):
        """Test update on a missing document"""
        with self.assertRaises(NotFoundError):
            self.store.update("beds", "nope", {"status": "available"})

    def test_query_filters(self):
        """Test query operators"""
        self.assertEqual([d["id"] for d in self.store.query("beds", where("status", "==", "occupied"))], ["b2"])
        self.assertEqual(len(self.store.query("beds", where("status", "in", ["available", "occupied"]))), 2)
        self.assertEqual([d["id"] for d in self.store.query("beds", where("patientId", "==", "p1"))], ["b2"])
        self.assertEqual(self.store.query("beds", where("number", ">", "101"))[0]["id"], "b2")

    def test_add_generates_id(self):
        """Test add assigns an id"""
        doc_id = self.store.add("inventory", {"name": "Paracetamol"})
        self.assertEqual(self.store.get("inventory", doc_id)["name"], "Paracetamol")

    def test_transaction_commits_all_writes(self):
        """Test a transaction applies every write"""

        def fn(txn):
            txn.update("beds", "b1", {"status": "occupied", "patientId": "p2"})
            txn.set("bills", "bill1", {"total": 10})
            return "done"

        self.assertEqual(self.store.run_transaction(fn), "done")
        self.assertEqual(self.store.get("beds", "b1")["patientId"], "p2")
        self.assertEqual(self.store.get("bills", "bill1")["total"], 10)

    def test_transaction_rolls_back_on_error(self):
        """Test a failing transaction writes nothing"""

        def fn(txn):
            txn.set("bills", "bill1", {"total": 10})
            txn.update("beds", "b1", {"status": "occupied"})
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            self.store.run_transaction(fn)
        self.assertIsNone(self.store.get("bills", "bill1"))
        self.assertEqual(self.store.get("beds", "b1")["status"], "available")

    def test_transaction_update_missing_document(self):
        """Test updating a missing document inside a transaction"""
        with self.assertRaises(NotFoundError):
            self.store.run_transaction(lambda txn: txn.update("beds", "nope", {"status": "available"}))

    def test_transaction_retries_after_concurrent_write(self):
        """Test the callback is re-run when a document it read changed"""
        calls = []

        def fn(txn):
            bed = txn.get("beds", "b1")
            calls.append(bed["status"])
            if len(calls) == 1:
                self.store.update("beds", "b1", {"status": "maintenance"})
            txn.update("beds", "b1", {"note": f"seen {bed['status']}"})

        self.store.run_transaction(fn)
        self.assertEqual(calls, ["available", "maintenance"])
        self.assertEqual(self.store.get("beds", "b1")["note"], "seen maintenance")

    def test_transaction_gives_up(self):
        """Test a transaction that always conflicts raises TransactionConflictError"""
        store = MemoryStore(max_attempts=3)
        store.set("beds", "b1", {"status": "available"})
        calls = []

        def fn(txn):
            calls.append(1)
            txn.get("beds", "b1")
            store.update("beds", "b1", {"touched": len(calls)})
            txn.update("beds", "b1", {"status": "occupied"})

        with self.assertRaises(TransactionConflictError):
            store.run_transaction(fn)
        self.assertEqual(len(calls), 3)
        self.assertEqual(store.get("beds", "b1")["status"], "available")


class FilterTest(unittest.TestCase):
    """Test filter helpers"""

    def test_where_rejects_unknown_operator(self):
        """Test unsupported operators are rejected"""
        with self.assertRaises(ValueError):
            where("status", "like", "a%")

    def test_missing_field_never_matches_range(self):
        """Test range filters skip documents without the field"""
        self.assertFalse(matches({}, [where("total", ">", 0)]))
        self.assertTrue(matches({}, [where("status", "!=", "paid")]))

    def test_to_mongo_filter(self):
        """Test translation to a MongoDB query"""
        query = to_mongo_filter([
            where("patientId", "==", "p1"),
            where("status", "in", ("approved", "dispensed")),
            where("total", ">=", 10),
            where("total", "<", 20),
        ])
        self.assertEqual(query, {
            "patientId": {"$eq": "p1"},
            "status": {"$in": ["approved", "dispensed"]},
            "total": {"$gte": 10, "$lt": 20},
        })

    def test_strip_unset(self):
        """Test None values are dropped recursively"""
        cleaned = strip_unset({"transactionId": "T1", "cardLast4": None, "upi": {"vpa": None, "ref": "R1"}})
        self.assertEqual(cleaned, {"transactionId": "T1", "upi": {"ref": "R1"}})
        self.assertEqual(strip_unset(None), {})


if __name__ == "__main__":
    unittest.main()
