from typing import Any, Dict, List, Optional


class GatewayError(Exception):
    error_type = "gateway_error"
    default_suggestion: Optional[str] = None

    def __init__(self, message: str, suggestion: Optional[str] = None):
        self.message = message
        self.suggestion = suggestion or self.default_suggestion
        super().__init__(message)

    def get_human_readable_message(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "message": self.get_human_readable_message(),
            "error_type": self.error_type,
            "detail": self.message,
        }
        if self.suggestion:
            payload["suggestion"] = self.suggestion
        return payload


class DatabaseConnectionError(GatewayError):
    error_type = "connection_error"
    default_suggestion = (
        "Check that the database server is reachable and the credentials are correct, "
        "then reconnect."
    )

    def __init__(self, message: str, connection_id: Optional[str] = None,
                 suggestion: Optional[str] = None):
        self.connection_id = connection_id
        super().__init__(message, suggestion)


class QueryExecutionError(GatewayError):
    error_type = "query_execution_error"
    base_message = "We encountered an issue while running your query."

    def __init__(self, query_id: str, original_error: Any,
                 message: str = "An error occurred during query execution"):
        self.query_id = query_id
        self.original_error = original_error
        self.original_message = str(original_error)
        super().__init__(f"{message} (Query ID: {query_id}): {self.original_message}")
        self.suggestion = self._suggest()

    def _suggest(self) -> str:
        original = self.original_message.lower()

        if "syntax error" in original or "incorrect syntax" in original:
            return "There appears to be a syntax error in your SQL. Please check your query syntax and try again."

        if "permission" in original or "access denied" in original:
            return ("You might not have the necessary permissions to perform this operation. "
                    "Please contact your database administrator.")

        if "timeout" in original or "timed out" in original:
            return ("The query took too long to execute. "
                    "Consider optimizing your query or breaking it into smaller parts.")

        if ("not found" in original or "doesn't exist" in original
                or "does not exist" in original or "invalid object name" in original):
            return ("One of the tables or columns referenced in your query doesn't exist. "
                    "Please verify the object names.")

        return (f"Please review your query and try again. If the problem persists, "
                f"contact support with reference ID: {self.query_id}.")

    def get_human_readable_message(self) -> str:
        return f"{self.base_message} {self.original_message}"


class SchemaValidationError(GatewayError):
    error_type = "schema_validation_error"

    def __init__(self, object_type: str, object_name: str, validation_issue: str,
                 message: str = "Schema validation failed"):
        self.object_type = object_type
        self.object_name = object_name
        self.validation_issue = validation_issue
        super().__init__(f"{message}: {validation_issue} for {object_type} '{object_name}'")
        self.suggestion = "; ".join(self.get_recommendations())

    def get_human_readable_message(self) -> str:
        base_message = f'We found an issue with the {self.object_type.lower()} "{self.object_name}".'
        issue = self.validation_issue.lower()

        if "not found" in issue or "does not exist" in issue:
            return f"{base_message} It doesn't seem to exist in the database. Please check the name and try again."

        if "permission" in issue:
            return f"{base_message} You might not have permission to access it. Please contact your database administrator."

        if "column" in issue:
            return f"{base_message} There appears to be an issue with one of its columns. Please verify the column definitions."

        return f"{base_message} {self.validation_issue}. Please review the schema and try again."

    def get_recommendations(self) -> List[str]:
        recommendations = [
            "Verify that the object name is spelled correctly",
            "Check that you have the necessary permissions",
        ]

        object_type = self.object_type.lower()
        if object_type == "table":
            recommendations.append("Ensure the table exists in the current database")
            recommendations.append("Check if the table is in a different schema")
        elif object_type == "column":
            recommendations.append("Verify the column exists in the specified table")
            recommendations.append("Check for typos in the column name")
        elif object_type == "pattern":
            recommendations = ["Use a valid regular expression for the table name pattern"]

        return recommendations

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["object_type"] = self.object_type
        payload["object_name"] = self.object_name
        return payload


class ConfigurationError(GatewayError):
    error_type = "configuration_error"
    default_suggestion = "Check the database settings (DB_TYPE, DB_HOST, DB_DATABASE, DB_USER) and restart."


class ConfigValidationError(ConfigurationError):
    def __init__(self, field_path: str, message: str):
        self.field_path = field_path
        super().__init__(f"Validation error at '{field_path}': {message}")


class ConfigNotFoundError(ConfigurationError):
    pass


class ConfigParseError(ConfigurationError):
    pass


class AlertStateError(GatewayError):
    error_type = "alert_state_error"

    def __init__(self, alert_id: str, message: str):
        self.alert_id = alert_id
        super().__init__(message)


class UnknownOperationError(GatewayError):
    error_type = "unknown_operation"

    def __init__(self, operation: str, supported: List[str]):
        self.operation = operation
        super().__init__(
            f"Unknown operation: {operation}",
            suggestion=f"Supported operations: {', '.join(supported)}",
        )


class InvalidParametersError(GatewayError):
    error_type = "invalid_parameters"

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"Invalid parameters for {operation}: {message}")
