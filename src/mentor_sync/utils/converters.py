"""
字段转换器 - 投影列值的转换
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from mentor_sync.models.record import ensure_utc


class ConverterType(str, Enum):
    """字段转换器类型"""
    LOWERCASE = "lowercase"           # 转为小写
    UPPERCASE = "uppercase"           # 转为大写
    TRIM = "trim"                     # 去除空白
    DEFAULT = "default"               # 默认值
    TYPECAST = "typecast"             # 类型转换
    ISOFORMAT = "isoformat"           # 日期时间转 ISO 字符串
    JOIN = "join"                     # 列表拼接
    TRUNCATE = "truncate"             # 截断长文本


ConverterFunc = Callable[[Any, Dict[str, Any]], Any]

# 表格里常见的布尔写法
_TRUE_STRINGS = {"true", "yes", "y", "1", "是"}
_FALSE_STRINGS = {"false", "no", "n", "0", "否", ""}


def _text(transform: Callable[[str], str]) -> ConverterFunc:
    """对非 None 值做字符串变换"""
    def converter(value: Any, params: Dict[str, Any]) -> Any:
        if value is None:
            return None
        return transform(str(value))
    return converter


def _default(value: Any, params: Dict[str, Any]) -> Any:
    """缺失、空字符串或空列表时使用 params["value"]"""
    if value is None or value == "" or value == []:
        return params.get("value")
    return value


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
        raise ValueError(f"无法识别的布尔值: {value}")
    return bool(value)


def _typecast(value: Any, params: Dict[str, Any]) -> Any:
    """按 params["target_type"] 转换，失败时保留原值"""
    if value is None:
        return None

    casts: Dict[str, Callable[[Any], Any]] = {
        "str": str,
        "int": lambda v: int(float(v)) if isinstance(v, str) and "." in v else int(v),
        "float": float,
        "bool": _to_bool,
    }
    cast = casts.get(params.get("target_type", "str"))
    if cast is None:
        return value
    try:
        return cast(value)
    except (ValueError, TypeError):
        return value


def _isoformat(value: Any, params: Dict[str, Any]) -> Any:
    """datetime 转 UTC ISO 字符串，date 转 YYYY-MM-DD"""
    if isinstance(value, datetime):
        return ensure_utc(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def _join(value: Any, params: Dict[str, Any]) -> Any:
    """列表拼接为字符串"""
    if value is None:
        return None
    if isinstance(value, (list, tuple, set)):
        separator = params.get("separator", ", ")
        return separator.join(str(item) for item in value)
    return value


def _truncate(value: Any, params: Dict[str, Any]) -> Any:
    """截断超长文本（Discord 字段值上限 1024）"""
    if value is None:
        return None
    limit = int(params.get("length", 1024))
    text = str(value)
    if len(text) <= limit:
        return text
    return text[: max(limit - 1, 0)] + "…"


# 转换器注册表
CONVERTER_REGISTRY: Dict[ConverterType, ConverterFunc] = {
    ConverterType.LOWERCASE: _text(str.lower),
    ConverterType.UPPERCASE: _text(str.upper),
    ConverterType.TRIM: _text(str.strip),
    ConverterType.DEFAULT: _default,
    ConverterType.TYPECAST: _typecast,
    ConverterType.ISOFORMAT: _isoformat,
    ConverterType.JOIN: _join,
    ConverterType.TRUNCATE: _truncate,
}


def convert(value: Any, converter_type: ConverterType, params: Optional[Dict[str, Any]] = None) -> Any:
    """
    执行字段值转换

    参数:
        value: 原始值
        converter_type: 转换器类型
        params: 转换器参数

    返回:
        转换后的值

    示例:
        >>> convert("  HELLO  ", ConverterType.TRIM)
        'HELLO'
        >>> convert(["a", "b"], ConverterType.JOIN)
        'a, b'
        >>> convert(None, ConverterType.DEFAULT, {"value": "pending"})
        'pending'
    """
    if params is None:
        params = {}

    if converter_type not in CONVERTER_REGISTRY:
        raise ValueError(f"未知的转换器类型: {converter_type}")

    converter_func = CONVERTER_REGISTRY[converter_type]
    return converter_func(value, params)


def get_converter(name: str) -> Optional[ConverterFunc]:
    """通过名称获取转换器函数，未知名称返回 None"""
    try:
        converter_type = ConverterType(name.lower())
        return CONVERTER_REGISTRY.get(converter_type)
    except ValueError:
        return None
