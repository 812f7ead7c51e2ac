from typing import Any, Dict, Optional


def success_response(data: Any = None, message: str = "success") -> Dict[str, Any]:
    return {
        "code": 0,
        "message": message,
        "data": data,
    }


def error_response(code: int, message: str, data: Optional[Any] = None) -> Dict[str, Any]:
    return {
        "code": code,
        "message": message,
        "data": data,
    }
