from enum import StrEnum


class FieldType(StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OBJECT = "object"
    ARRAY = "array"


class Action(StrEnum):
    CREATE = "create"
    UPSERT = "upsert"
    READ = "read"
    FIND_ALL = "findAll"
    FIND_ONE = "findOne"
    FIND_AND_UPDATE = "findAndUpdate"
    COUNT = "count"
    QUERY = "query"
    DISTINCT = "distinct"
    UPDATE = "update"
    DELETE = "delete"
    DELETE_ALL = "deleteAll"


VALID_ACTIONS: tuple[str, ...] = tuple(action.value for action in Action)
