from modelbridge.models.base import OMIT
from modelbridge.models.enums import VALID_ACTIONS, Action, FieldType
from modelbridge.models.field import ConfigField, FieldSchema
from modelbridge.models.query import QueryOptions, like_to_regex, prepare_query_options

__all__ = [
    "OMIT",
    "VALID_ACTIONS",
    "Action",
    "ConfigField",
    "FieldSchema",
    "FieldType",
    "QueryOptions",
    "like_to_regex",
    "prepare_query_options",
]
