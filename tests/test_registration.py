import unittest
from datetime import datetime

from factories import T0, seed_appointment, seed_patient

from hospital_billing.registration import auto_register_patient_from_appointment, is_patient_registered
from hospital_billing.store import MemoryStore
from hospital_billing.uhid import extract_date_from_uhid, generate_uhid, is_valid_uhid, parse_barcode_to_uhid


class UhidTest(unittest.TestCase):
    """Test UHID helpers"""

    def test_generate(self):
        """Test generated UHIDs carry the registration month"""
        uhid = generate_uhid(T0)
        self.assertTrue(uhid.startswith("UHID-202601-"))
        self.assertTrue(is_valid_uhid(uhid))

    def test_validate(self):
        """Test the UHID format check"""
        self.assertTrue(is_valid_uhid("UHID-202601-00001"))
        for bad in ("", None, "UHID-2026-00001", "uhid-202601-00001", "UHID-202601-00001X"):
            self.assertFalse(is_valid_uhid(bad), bad)

    def test_extract_date(self):
        """Test the registration month is recovered"""
        self.assertEqual(extract_date_from_uhid("UHID-202601-00042"), datetime(2026, 1, 1))
        self.assertIsNone(extract_date_from_uhid("UHID-202613-00042"))
        self.assertIsNone(extract_date_from_uhid("garbage"))

    def test_barcode(self):
        """Test UHIDs are pulled out of raw scanner output"""
        self.assertEqual(parse_barcode_to_uhid("  uhid-202601-00001\n"), "UHID-202601-00001")
        self.assertEqual(parse_barcode_to_uhid("*UHID-202601-00001*"), "UHID-202601-00001")
        self.assertIsNone(parse_barcode_to_uhid("12345"))
        self.assertIsNone(parse_barcode_to_uhid(None))


class AutoRegisterTest(unittest.TestCase):
    """Test patient auto-registration"""

    def setUp(self):
        self.store = MemoryStore()

    def test_existing_patient_by_id(self):
        """Test an existing patient is linked to the doctor and gets the visit once"""
        seed_patient(self.store, "p1", assignedDoctor=None)
        appointment = seed_appointment(self.store, "a1")

        patient_id = auto_register_patient_from_appointment(self.store, appointment, "d1", "Mehta")
        auto_register_patient_from_appointment(self.store, appointment, "d1", "Mehta")

        self.assertEqual(patient_id, "p1")
        patient = self.store.get("patients", "p1")
        self.assertEqual(patient["assignedDoctor"], "d1")
        self.assertEqual(patient["history"], ["consultation consultation on 04/01/2026 - Dr. Mehta"])
        self.assertTrue(is_patient_registered(self.store, "p1", "d1"))
        self.assertFalse(is_patient_registered(self.store, "p1", "d2"))

    def test_existing_patient_by_uhid(self):
        """Test an appointment without a known patient id matches on UHID"""
        seed_patient(self.store, "p1", uhid="UHID-202601-00077")
        appointment = seed_appointment(self.store, "a1", patient_id="", uhid="UHID-202601-00077")

        self.assertEqual(auto_register_patient_from_appointment(self.store, appointment, "d2", "Rao"), "p1")
        self.assertEqual(self.store.get("patients", "p1")["assignedDoctor"], "d2")
        self.assertEqual(len(self.store.query("patients")), 1)

    def test_new_patient(self):
        """Test a new patient record is created with a UHID"""
        appointment = seed_appointment(self.store, "a1", patient_id="p5", patientPhone="9000000000")

        patient_id = auto_register_patient_from_appointment(self.store, appointment, "d1", "Mehta")

        self.assertEqual(patient_id, "p5")
        patient = self.store.get("patients", "p5")
        self.assertEqual(patient["name"], "Ravi Kumar")
        self.assertEqual(patient["phone"], "9000000000")
        self.assertEqual(patient["status"], "stable")
        self.assertEqual(patient["assignedDoctor"], "d1")
        self.assertTrue(is_valid_uhid(patient["uhid"]))
        self.assertEqual(len(patient["history"]), 1)
        self.assertNotIn("bedAssignedAt", patient)


if __name__ == "__main__":
    unittest.main()
