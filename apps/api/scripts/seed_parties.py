import argparse

from sqlalchemy.orm import Session

from core.db import SessionLocal
from models.party import Patient, User


DEFAULT_PATIENT_ID = "patient-local-001"
DEFAULT_REQUESTER_ID = "user-local-001"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Register (or fetch) a reference patient and requester for local development."
    )
    parser.add_argument("--patient-id", default=DEFAULT_PATIENT_ID, help=f"Patient id (default: {DEFAULT_PATIENT_ID}).")
    parser.add_argument("--patient-name", default="Ada Patient", help="Patient first and last name.")
    parser.add_argument(
        "--requester-id",
        default=DEFAULT_REQUESTER_ID,
        help=f"Requester user id (default: {DEFAULT_REQUESTER_ID}).",
    )
    parser.add_argument("--requester-name", default="Grace Clinician", help="Requester first and last name.")
    parser.add_argument("--requester-role", default="doctor", help="Requester role (default: doctor).")
    parser.add_argument("--requester-email", default=None, help="Requester email address.")
    return parser.parse_args()


def _split_name(full_name: str) -> tuple[str, str]:
    first, _, last = full_name.strip().partition(" ")
    return first, last


def get_or_create_patient(db: Session, patient_id: str, full_name: str) -> Patient:
    existing = db.get(Patient, patient_id)
    if existing:
        return existing
    first_name, last_name = _split_name(full_name)
    patient = Patient(id=patient_id, first_name=first_name, last_name=last_name)
    db.add(patient)
    db.flush()
    return patient


def get_or_create_requester(db: Session, requester_id: str, full_name: str, role: str, email: str | None) -> User:
    existing = db.get(User, requester_id)
    if existing:
        return existing
    first_name, last_name = _split_name(full_name)
    requester = User(id=requester_id, first_name=first_name, last_name=last_name, role=role, email=email)
    db.add(requester)
    db.flush()
    return requester


def main() -> None:
    args = parse_args()
    db = SessionLocal()
    try:
        patient = get_or_create_patient(db, args.patient_id, args.patient_name)
        requester = get_or_create_requester(
            db, args.requester_id, args.requester_name, args.requester_role, args.requester_email
        )
        db.commit()

        print("Patient ID:", patient.id)
        print("Patient Name:", patient.display_name)
        print("Requester ID:", requester.id)
        print("Requester Name:", requester.display_name)
        print("Requester Role:", requester.role)
    finally:
        db.close()


if __name__ == "__main__":
    main()
