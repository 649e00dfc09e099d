from flask import request
from utils.errors import ValidationError


def clean_str(value, field, required=True, upper=False):
    """
    取请求里的字符串参数：去掉首尾空格，非字符串抛 ValidationError
    required=False 时缺省返回 None
    """
    if value is None:
        value = ''
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string")

    value = value.strip()
    if upper:
        value = value.upper()
    if not value:
        if required:
            raise ValidationError(f"{field} is required")
        return None
    return value


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data
