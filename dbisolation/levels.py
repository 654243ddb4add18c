from enum import Enum


class Backend(Enum):
    POSTGRES = "postgres"
    MYSQL = "mysql"
    MSSQL = "mssql"


class IsolationLevel(Enum):
    DEFAULT = "default"
    READ_UNCOMMITTED = "read-uncommitted"
    READ_COMMITTED = "read-committed"
    REPEATABLE_READ = "repeatable-read"
    SERIALIZABLE = "serializable"

    @property
    def sql(self) -> str:
        # only meaningful for the explicit levels
        return self.value.replace("-", " ")


class Phase(Enum):
    PRE_TRANSACTION = "pre-transaction"
    BEGIN = "begin"
    IN_TRANSACTION = "in-transaction"
