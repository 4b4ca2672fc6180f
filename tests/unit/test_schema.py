"""Unit tests for crm_import.schema."""

from __future__ import annotations

import hashlib
import textwrap
from pathlib import Path

import pytest
import yaml

from crm_import.schema import (
    SCHEMA_DIR,
    SchemaValidationError,
    load_builtin_schema,
    load_schema,
    validate_schema_data,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

MINIMAL_YAML = textwrap.dedent("""\
    entity_type: contact
    version: "v9.9.9"
    natural_key: email
    fields:
      full_name:
        aliases: [nome, name]
      email:
        type: text
        aliases: [email]
      contact_type:
        type: enum
        enum: [client, partner]
        value_aliases:
          - {value: partner, match: [parceiro]}
        fallback: client
    defaults:
      contact_type: client
    rules:
      any_of:
        - [full_name, email]
""")


def _data(**overrides):
    data = yaml.safe_load(MINIMAL_YAML)
    data.update(overrides)
    return data


@pytest.fixture
def minimal_path(tmp_path: Path) -> Path:
    p = tmp_path / "contact.yml"
    p.write_text(MINIMAL_YAML, encoding="utf-8")
    return p


# ---------------------------------------------------------------------------
# load_schema
# ---------------------------------------------------------------------------

class TestLoadSchema:
    def test_loads_minimal(self, minimal_path):
        schema = load_schema(minimal_path)
        assert schema.entity_type == "contact"
        assert schema.version == "v9.9.9"
        assert schema.natural_key == "email"
        assert schema.field_names == ("full_name", "email", "contact_type")

    def test_type_defaults_to_text(self, minimal_path):
        schema = load_schema(minimal_path)
        assert schema.fields["full_name"].type == "text"

    def test_value_aliases_parsed(self, minimal_path):
        spec = load_schema(minimal_path).fields["contact_type"]
        assert spec.enum == ("client", "partner")
        assert spec.value_aliases == (("partner", ("parceiro",)),)
        assert spec.fallback == "client"

    def test_yaml_hash_is_sha256_of_file(self, minimal_path):
        schema = load_schema(minimal_path)
        assert schema.yaml_hash == hashlib.sha256(MINIMAL_YAML.encode("utf-8")).hexdigest()

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_schema(tmp_path / "nope.yml")


# ---------------------------------------------------------------------------
# Built-in schemas
# ---------------------------------------------------------------------------

class TestBuiltinSchemas:
    @pytest.mark.parametrize("entity_type", ["contact", "opportunity", "property"])
    def test_every_builtin_loads(self, entity_type):
        schema = load_builtin_schema(entity_type)
        assert schema.entity_type == entity_type
        assert (SCHEMA_DIR / f"{entity_type}.yml").exists()

    def test_contact_field_order(self):
        schema = load_builtin_schema("contact")
        assert schema.field_names[:3] == ("full_name", "email", "phone")
        assert schema.natural_key == "email"
        assert schema.multi_value_fields == frozenset({"tags"})

    def test_property_numeric_fields(self):
        schema = load_builtin_schema("property")
        assert schema.numeric_fields == frozenset(
            {"price", "bedrooms", "bathrooms", "square_feet", "year_built"}
        )
        assert schema.natural_key is None
        assert schema.classify_fields == ("property_type", "listing_type")

    def test_opportunity_uses_compact_headers(self):
        schema = load_builtin_schema("opportunity")
        assert schema.compact_headers is True
        assert schema.natural_key == "buyer_email"

    def test_unknown_entity_type(self):
        with pytest.raises(SchemaValidationError, match="Unknown entity_type"):
            load_builtin_schema("invoice")


# ---------------------------------------------------------------------------
# validate_schema_data
# ---------------------------------------------------------------------------

class TestValidateSchemaData:
    def test_valid_passes(self):
        validate_schema_data(_data())

    def test_root_must_be_mapping(self):
        with pytest.raises(SchemaValidationError, match="mapping"):
            validate_schema_data(["not", "a", "dict"])

    def test_missing_required_key(self):
        data = _data()
        del data["version"]
        with pytest.raises(SchemaValidationError, match="version"):
            validate_schema_data(data)

    def test_invalid_entity_type(self):
        with pytest.raises(SchemaValidationError, match="entity_type"):
            validate_schema_data(_data(entity_type="invoice"))

    def test_unknown_field_type(self):
        data = _data()
        data["fields"]["email"]["type"] = "date"
        with pytest.raises(SchemaValidationError, match="invalid type"):
            validate_schema_data(data)

    def test_enum_without_values(self):
        data = _data()
        data["fields"]["contact_type"]["enum"] = []
        with pytest.raises(SchemaValidationError, match="must declare"):
            validate_schema_data(data)

    def test_value_alias_outside_enum(self):
        data = _data()
        data["fields"]["contact_type"]["value_aliases"] = [{"value": "vendor", "match": ["x"]}]
        with pytest.raises(SchemaValidationError, match="not in its enum"):
            validate_schema_data(data)

    def test_fallback_outside_enum(self):
        data = _data()
        data["fields"]["contact_type"]["fallback"] = "vendor"
        with pytest.raises(SchemaValidationError, match="fallback"):
            validate_schema_data(data)

    def test_ignore_is_reserved(self):
        data = _data()
        data["fields"]["ignore"] = {"type": "text"}
        with pytest.raises(SchemaValidationError, match="reserved"):
            validate_schema_data(data)

    def test_natural_key_must_be_field(self):
        with pytest.raises(SchemaValidationError, match="natural_key"):
            validate_schema_data(_data(natural_key="phone"))

    def test_unknown_rule_key(self):
        with pytest.raises(SchemaValidationError, match="Unknown rule keys"):
            validate_schema_data(_data(rules={"unique": ["email"]}))

    def test_rule_on_undeclared_field(self):
        with pytest.raises(SchemaValidationError, match="undeclared field 'price'"):
            validate_schema_data(_data(rules={"positive": ["price"]}))

    def test_conditional_rule_fields_checked(self):
        rules = {"min_when": [{"field": "full_name", "when": {"listing_type": "sale"}, "min": 1}]}
        with pytest.raises(SchemaValidationError, match="listing_type"):
            validate_schema_data(_data(rules=rules))

    def test_warning_on_undeclared_field(self):
        with pytest.raises(SchemaValidationError, match="Warning references"):
            validate_schema_data(_data(warnings={"missing": ["phone"]}))

    def test_field_spec_must_be_mapping(self):
        data = _data()
        data["fields"]["email"] = "text"
        with pytest.raises(SchemaValidationError, match="Field 'email' must be a mapping"):
            validate_schema_data(data)

    def test_rules_block_must_be_mapping(self):
        with pytest.raises(SchemaValidationError, match="'rules' must be a mapping"):
            validate_schema_data(_data(rules=["required"]))

    def test_min_length_as_list(self):
        with pytest.raises(SchemaValidationError, match="min_length"):
            validate_schema_data(_data(rules={"min_length": ["full_name"]}))

    def test_min_length_not_numeric(self):
        with pytest.raises(SchemaValidationError, match="not numeric"):
            validate_schema_data(_data(warnings={"min_length": {"full_name": "five"}}))

    def test_required_as_string(self):
        with pytest.raises(SchemaValidationError, match="list of field names"):
            validate_schema_data(_data(rules={"required": "email"}))

    def test_any_of_flat_list(self):
        with pytest.raises(SchemaValidationError, match="any_of"):
            validate_schema_data(_data(rules={"any_of": ["full_name", "email"]}))

    def test_conditional_rule_without_field(self):
        with pytest.raises(SchemaValidationError, match="'field'"):
            validate_schema_data(_data(rules={"min_when": [{"when": {}, "min": 1}]}))

    def test_conditional_rule_without_bound(self):
        rules = {"max_when": [{"field": "full_name", "max": "lots"}]}
        with pytest.raises(SchemaValidationError, match="not numeric"):
            validate_schema_data(_data(rules=rules))

    def test_conditional_when_must_be_mapping(self):
        rules = {"min_when": [{"field": "full_name", "when": ["contact_type"], "min": 1}]}
        with pytest.raises(SchemaValidationError, match="'when' must be a mapping"):
            validate_schema_data(_data(rules=rules))
