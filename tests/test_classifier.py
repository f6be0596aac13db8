"""
Unit tests for the profession/specialty classifier.
"""

import pytest
import sys
from pathlib import Path

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from medverify.classify.profession_classifier import (
    ProfessionClassifier,
    fold_registry_text,
    load_profession_table,
)
from medverify.models import NOT_SPECIFIED, UNKNOWN_PROFESSION, LicenseStatus, RawCandidate


class TestProfessionClassifier:
    """Test cases for profession classification."""

    def setup_method(self):
        """Setup test fixtures."""
        self.classifier = ProfessionClassifier()

    def test_packaged_table_is_versioned(self):
        """Test that the packaged table loads with a version."""
        table = load_profession_table()
        assert table["version"]
        assert self.classifier.version == str(table["version"])

    def test_fold_registry_text(self):
        """Test gender marker and accent folding."""
        assert fold_registry_text("MÉDICO(A) CIRUJANO(A)") == "MEDICO CIRUJANO"
        assert fold_registry_text("  Médica  Cirujana ") == "MEDICA CIRUJANA"

    def test_physician_is_eligible(self):
        """Test physician profession."""
        label, eligible, entry = self.classifier.classify_profession("MÉDICO(A) CIRUJANO(A)")
        assert label == "MÉDICO(A) CIRUJANO(A)"
        assert eligible is True
        assert entry == "MÉDICO(A) CIRUJANO(A)"

    def test_gender_variants_are_eligible(self):
        """Test feminine registry wording."""
        label, eligible, _ = self.classifier.classify_profession("MEDICA CIRUJANA")
        assert label == "MÉDICO(A) CIRUJANO(A)"
        assert eligible is True

    def test_veterinarian_is_not_eligible(self):
        """Test that veterinarians are excluded even though the text says MEDICO."""
        label, eligible, _ = self.classifier.classify_profession("MÉDICO(A) VETERINARIO(A)")
        assert label == "MÉDICO(A) VETERINARIO(A)"
        assert eligible is False

    def test_non_physician_professions(self):
        """Test other health professions."""
        for text in ["LICENCIADO(A) EN ENFERMERÍA", "ODONTÓLOGO(A)", "BIOANALISTA", "TÉCNICO SUPERIOR EN RADIOLOGÍA"]:
            _, eligible, _ = self.classifier.classify_profession(text)
            assert eligible is False, text

    def test_unknown_profession_fails_closed(self):
        """Test that unmatched professions are not eligible."""
        label, eligible, entry = self.classifier.classify_profession("INGENIERO CIVIL")
        assert label == "INGENIERO CIVIL"
        assert eligible is False
        assert entry is None

    def test_blank_profession(self):
        """Test blank profession text."""
        label, eligible, _ = self.classifier.classify_profession("   ")
        assert label == UNKNOWN_PROFESSION
        assert eligible is False


class TestSpecialtyClassification:
    """Test cases for specialty classification."""

    def setup_method(self):
        """Setup test fixtures."""
        self.classifier = ProfessionClassifier()

    def test_blank_specialty_is_not_specified(self):
        """Test blank specialty."""
        assert self.classifier.classify_specialty("", "MÉDICO(A) CIRUJANO(A)") == NOT_SPECIFIED
        assert self.classifier.classify_specialty(None, "MÉDICO(A) CIRUJANO(A)") == NOT_SPECIFIED

    def test_profession_copied_into_specialty_is_not_specified(self):
        """Test that a profession is never reported as a specialty."""
        assert self.classifier.classify_specialty("MÉDICO(A) CIRUJANO(A)", "MÉDICO(A) CIRUJANO(A)") == NOT_SPECIFIED
        assert self.classifier.classify_specialty("MÉDICO(A) VETERINARIO(A)", "") == NOT_SPECIFIED

    def test_specialty_prefix_removed(self):
        """Test canonical specialty."""
        result = self.classifier.classify_specialty("ESPECIALISTA EN MEDICINA INTERNA", "MÉDICO(A) CIRUJANO(A)")
        assert result == "MEDICINA INTERNA"

    def test_specialty_accents_canonicalized(self):
        """Test catalogue canonical names."""
        assert self.classifier.classify_specialty("ESPECIALISTA EN CARDIOLOGIA") == "CARDIOLOGÍA"
        assert self.classifier.classify_specialty("especialista en pediatría y puericultura") == "PEDIATRÍA"

    def test_specialty_fuzzy_match(self):
        """Test near-miss spelling."""
        assert self.classifier.classify_specialty("ESPECIALISTA EN CARDIOLOJIA") == "CARDIOLOGÍA"

    def test_multiple_specialties(self):
        """Test multiple specialties joined."""
        result = self.classifier.classify_specialty(
            "ESPECIALISTA EN MEDICINA INTERNA; ESPECIALISTA EN CARDIOLOGIA"
        )
        assert result == "MEDICINA INTERNA Y CARDIOLOGÍA"

    def test_unknown_specialty_kept(self):
        """Test specialty outside the catalogue."""
        assert self.classifier.classify_specialty("ESPECIALISTA EN MEDICINA AEROESPACIAL") == "MEDICINA AEROESPACIAL"


class TestCandidateClassification:
    """Test cases for whole-candidate classification."""

    def setup_method(self):
        """Setup test fixtures."""
        self.classifier = ProfessionClassifier()

    def test_classify_physician_with_specialty(self):
        """Test the physician with a specialty."""
        candidate = RawCandidate(
            name="ANGHINIE SANCHEZ RODRIGUEZ",
            profession_text="MÉDICO(A) CIRUJANO(A)",
            specialty_text="ESPECIALISTA EN MEDICINA INTERNA",
            license_number="MPPS-67301",
        )
        classified = self.classifier.classify(candidate)
        assert classified.is_physician_eligible is True
        assert classified.profession_label == "MÉDICO(A) CIRUJANO(A)"
        assert classified.specialty_label == "MEDICINA INTERNA"
        assert classified.license_status == LicenseStatus.ACTIVE
        assert classified.raw is candidate

    def test_classify_veterinarian_without_specialty(self):
        """Test non-physician candidates are kept with a clear label."""
        candidate = RawCandidate(name="PEDRO PEREZ", profession_text="MÉDICO(A) VETERINARIO(A)")
        classified = self.classifier.classify(candidate)
        assert classified.is_physician_eligible is False
        assert classified.profession_label == "MÉDICO(A) VETERINARIO(A)"
        assert classified.specialty_label == NOT_SPECIFIED
        assert classified.profession_label != NOT_SPECIFIED

    def test_license_status_mapping(self):
        """Test legal-status text mapping."""
        assert self.classifier.classify_license_status("") == LicenseStatus.ACTIVE
        assert self.classifier.classify_license_status("ACTIVO") == LicenseStatus.ACTIVE
        assert self.classifier.classify_license_status("INACTIVO") == LicenseStatus.SUSPENDED
        assert self.classifier.classify_license_status("SUSPENDIDO") == LicenseStatus.SUSPENDED
        assert self.classifier.classify_license_status("REVOCADO") == LicenseStatus.REVOKED
        assert self.classifier.classify_license_status("EN REVISIÓN") == LicenseStatus.UNKNOWN

    def test_negated_status_is_not_active(self):
        """Test that negated status text never reads as active."""
        for text in ["NO VIGENTE", "NO HABILITADO", "NO ACTIVO", "DESACTIVADO", "No Vigente"]:
            assert self.classifier.classify_license_status(text) == LicenseStatus.SUSPENDED, text
        assert self.classifier.classify_license_status("VIGENTE") == LicenseStatus.ACTIVE
        assert self.classifier.classify_license_status("HABILITADO") == LicenseStatus.ACTIVE
        assert self.classifier.classify_license_status("INHABILITADO") == LicenseStatus.REVOKED

    def test_status_markers_match_word_starts(self):
        """Test that markers inside other words are ignored."""
        assert self.classifier.classify_license_status("REACTIVACION PENDIENTE") == LicenseStatus.UNKNOWN

    def test_custom_table(self):
        """Test a swapped-in profession table."""
        table = {
            "version": "test-1",
            "professions": [
                {"canonical": "MEDICO", "physician_eligible": True, "patterns": ["MEDICO"]},
            ],
        }
        classifier = ProfessionClassifier(table=table)
        assert classifier.version == "test-1"
        assert classifier.classify_profession("MEDICO")[1] is True
        assert classifier.classify_profession("VETERINARIO")[1] is False

    def test_table_without_professions_rejected(self, tmp_path):
        """Test invalid table files."""
        path = tmp_path / "table.yaml"
        path.write_text("version: '1'\nprofessions: []\n", encoding="utf-8")
        with pytest.raises(ValueError):
            load_profession_table(str(path))


if __name__ == "__main__":
    pytest.main([__file__])
