"""
Tests for column auto-mapping.
"""
import pytest

from app.api.schemas.shared import ColumnMapping, ColumnMappingConfig
from app.domain.imports.mapper import (
    apply_manual_override,
    auto_map_column,
    auto_map_columns,
    calculate_similarity,
    check_required_mappings,
    get_mapping_summary,
    normalize_header,
)


class TestNormalizeHeader:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Prénom", "prenom"),
            ("Adresse E-mail", "adresse_e_mail"),
            (" Code  Postal ", "code_postal"),
            ("Téléphone", "telephone"),
            ("N° client", "n_client"),
            ("", ""),
        ],
    )
    def test_normalize(self, header, expected):
        assert normalize_header(header) == expected


class TestSimilarity:
    def test_identical(self):
        assert calculate_similarity("email", "email") == 1.0

    def test_whole_token_containment(self):
        assert calculate_similarity("email_pro", "email") == 0.9

    def test_short_tokens_do_not_count_as_containment(self):
        assert calculate_similarity("cp_client", "cp") < 0.9

    def test_empty(self):
        assert calculate_similarity("", "email") == 0.0


class TestAutoMapColumn:
    @pytest.mark.parametrize(
        "header,field",
        [
            ("Prénom", "first_name"),
            ("NOM", "last_name"),
            ("E-mail", "email"),
            ("Courriel", "email"),
            ("Tél", "phone"),
            ("Portable", "phone"),
            ("Société", "company"),
            ("Code Postal", "postal_code"),
            ("Ville", "city"),
            ("Commercial", "assigned_to"),
        ],
    )
    def test_french_aliases(self, header, field):
        target, confidence, _ = auto_map_column(header)
        assert target == field
        assert confidence == 1.0

    def test_unknown_header_is_unmapped(self):
        target, confidence, _ = auto_map_column("Zzqx")
        assert target is None
        assert confidence == 0.0


class TestAutoMapColumns:
    def test_maps_in_source_order_with_samples(self):
        headers = ["Prénom", "Nom", "Email", "Divers"]
        samples = [["Jean", "Dupont", "jean@x.fr", ""], ["Anne", "Martin", "anne@x.fr", "x"]]
        mappings = auto_map_columns(headers, samples)

        assert [m.source_index for m in mappings] == [0, 1, 2, 3]
        assert [m.target_field for m in mappings[:3]] == ["first_name", "last_name", "email"]
        assert mappings[2].sample_values == ["jean@x.fr", "anne@x.fr"]
        assert mappings[3].sample_values == ["x"]
        assert all(not m.is_manual for m in mappings)

    def test_each_field_claimed_once(self):
        mappings = auto_map_columns(["Email", "Mail"])
        targets = [m.target_field for m in mappings]
        assert targets.count("email") == 1
        # Equal confidence: the earlier column wins.
        assert targets == ["email", None]
        assert "email" in [a.field for a in mappings[1].alternatives]

    def test_higher_confidence_wins_regardless_of_order(self):
        mappings = auto_map_columns(["Email pro", "Email"])
        assert mappings[0].target_field is None
        assert mappings[1].target_field == "email"

    def test_result_is_a_valid_mapping_config(self):
        mappings = auto_map_columns(["Nom", "Prénom", "Téléphone", "Tel", "Mobile"])
        ColumnMappingConfig(mappings=mappings)

    def test_threshold(self):
        mappings = auto_map_columns(["Email pro"], threshold=0.95)
        assert mappings[0].target_field is None


class TestManualOverride:
    def _mappings(self):
        return [
            ColumnMapping(source_column="Email", source_index=0, target_field="email", confidence=1.0),
            ColumnMapping(source_column="Contact", source_index=1),
        ]

    def test_override_moves_field(self):
        updated = apply_manual_override(self._mappings(), 1, "email")
        assert updated[0].target_field is None
        assert updated[1].target_field == "email"
        assert updated[1].is_manual is True
        assert updated[1].confidence == 1.0

    def test_override_clears_field(self):
        updated = apply_manual_override(self._mappings(), 0, None)
        assert updated[0].target_field is None
        assert updated[0].is_manual is True

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            apply_manual_override(self._mappings(), 1, "salary")


class TestRequiredMappings:
    def test_contact_field_present(self):
        mappings = auto_map_columns(["Prénom", "Téléphone"])
        check = check_required_mappings(mappings)
        assert check.has_contact_field is True
        assert "last_name" in check.missing_recommended_fields

    def test_no_contact_field(self):
        mappings = auto_map_columns(["Prénom", "Nom", "Ville"])
        check = check_required_mappings(mappings)
        assert check.has_contact_field is False
        assert check.missing_contact_fields == ["email", "phone", "external_id"]

    def test_summary(self):
        mappings = apply_manual_override(auto_map_columns(["Prénom", "Email", "Zzqx"]), 2, "notes")
        summary = get_mapping_summary(mappings)
        assert summary.total_columns == 3
        assert summary.mapped_columns == 3
        assert summary.unmapped_columns == 0
        assert summary.manual_overrides == 1
