# @file
#
# Copyright (c) Microsoft Corporation.
# SPDX-License-Identifier: BSD-2-Clause-Patent
##
"""A command line script used to validate a health check report against its schema."""
import argparse
import json
import logging
import sys

import jsonschema
from jsonschema import validate

STATUS_VALUES = ["expired", "expiring-soon", "valid"]

CANDIDATE_SCHEMA = {
    "type": "object",
    "required": ["path", "timestamp", "companion"],
    "properties": {
        "path": {"type": "string"},
        "timestamp": {"type": "integer"},
        "companion": {"type": ["string", "null"]},
    },
}

REPORT_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "Secure Boot health check report",
    "type": "object",
    "required": ["analysisTimestamp", "secureBoot", "loaderUpdate", "localCertificate", "keyStores", "summary"],
    "properties": {
        "analysisTimestamp": {"type": "string"},
        "secureBoot": {
            "type": "object",
            "required": ["secureBootEnabled", "chain", "partitionId", "loaderPath"],
            "properties": {
                "secureBootEnabled": {"type": "boolean"},
                "chain": {"enum": ["shim", "direct"]},
                "partitionId": {"type": "string"},
                "loaderPath": {"type": "string"},
            },
        },
        "loaderUpdate": {
            "type": "object",
            "required": ["checked", "candidates", "selected", "installed", "error"],
            "properties": {
                "checked": {"type": "boolean"},
                "currentLoader": {"type": ["string", "null"]},
                "candidates": {"type": "array", "items": CANDIDATE_SCHEMA},
                "selected": {"oneOf": [{"type": "null"}, CANDIDATE_SCHEMA]},
                "sbat": {"type": ["string", "null"]},
                "installed": {"type": "boolean"},
                "error": {"type": ["string", "null"]},
            },
        },
        "localCertificate": {
            "oneOf": [
                {"type": "null"},
                {
                    "type": "object",
                    "required": ["path", "subject", "notAfter", "status"],
                    "properties": {"status": {"enum": STATUS_VALUES}},
                },
            ]
        },
        "keyStores": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["store", "total", "expired", "expiringSoon", "records", "error"],
                "properties": {
                    "store": {"enum": ["MOK", "db", "KEK", "PK"]},
                    "total": {"type": "integer", "minimum": 0},
                    "expired": {"type": "integer", "minimum": 0},
                    "expiringSoon": {"type": "integer", "minimum": 0},
                    "unparseable": {"type": "array", "items": {"type": "string"}},
                    "records": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["index", "issuer", "notAfter", "status"],
                            "properties": {"status": {"enum": STATUS_VALUES}},
                        },
                    },
                    "error": {"type": ["string", "null"]},
                },
            },
        },
        "summary": {
            "type": "object",
            "required": ["total", "expired", "expiringSoon"],
        },
    },
}


def validate_json_schema(json_data: dict, schema: dict) -> bool:
    """Validates a JSON object against a given schema.

    Args:
        json_data (dict): The JSON data to validate.
        schema (dict): The schema to validate against.

    Raises:
        jsonschema.exceptions.ValidationError: If the JSON data does not conform to the schema.
    """
    try:
        validate(instance=json_data, schema=schema)
        logging.debug("JSON data is valid against the schema.")
    except jsonschema.exceptions.ValidationError as err:
        logging.error(f"JSON data is invalid: {err.message}")
        raise

    return True


def main() -> int:
    """Main function to validate a saved report against the report schema or a given schema."""
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Validate a health check report against its schema.")
    parser.add_argument("json_data", help="Path to the JSON report.")
    parser.add_argument("schema", nargs="?", help="Path to a schema file (default: the built-in report schema).")
    args = parser.parse_args()

    with open(args.json_data, "r") as json_file:
        json_data = json.load(json_file)

    schema = REPORT_SCHEMA
    if args.schema:
        with open(args.schema, "r") as schema_file:
            schema = json.load(schema_file)

    try:
        validate_json_schema(json_data, schema)
    except jsonschema.exceptions.ValidationError:
        return 1

    logging.info("JSON data is valid against the schema.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
