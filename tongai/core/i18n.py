from typing import Dict, Any

SUPPORTED_LOCALES = ("zh-cn", "zh-tw", "en")
DEFAULT_LOCALE = "zh-cn"

TRANSLATIONS: Dict[str, Dict[str, Any]] = {
    "zh-cn": {
        "errors": {
            "invalid_key": "无效的访问密钥",
            "quota_exceeded": "该密钥的 Token 额度已用完",
            "device_banned": "当前设备已被禁用",
            "invalid_image_key": "无效的图片密钥或配额已满",
            "image_key_required": "上传图片前请先完成图片功能认证",
            "not_logged_in": "请先使用访问密钥登录",
            "usage_hidden": "管理员未开放用量查询",
            "admin_login_failed": "管理员密码错误",
            "rate_limit": "请求过于频繁，请稍后再试",
            "internal_error": "系统错误，请稍后再试",
        },
        "placeholders": {
            "image_question": "[图片上传]",
        },
    },
    "zh-tw": {
        "errors": {
            "invalid_key": "無效的訪問密鑰",
            "quota_exceeded": "該密鑰的 Token 額度已用完",
            "device_banned": "當前設備已被禁用",
            "invalid_image_key": "無效的圖片密鑰或配額已滿",
            "image_key_required": "上傳圖片前請先完成圖片功能認證",
            "not_logged_in": "請先使用訪問密鑰登入",
            "usage_hidden": "管理員未開放用量查詢",
            "admin_login_failed": "管理員密碼錯誤",
            "rate_limit": "請求過於頻繁，請稍後再試",
            "internal_error": "系統錯誤，請稍後再試",
        },
        "placeholders": {
            "image_question": "[圖片上傳]",
        },
    },
    "en": {
        "errors": {
            "invalid_key": "Invalid access key",
            "quota_exceeded": "This key has used up its token quota",
            "device_banned": "This device has been banned",
            "invalid_image_key": "Invalid image key or quota exceeded",
            "image_key_required": "Please verify an image key before uploading images",
            "not_logged_in": "Please log in with an access key first",
            "usage_hidden": "Usage display is disabled by the administrator",
            "admin_login_failed": "Incorrect admin password",
            "rate_limit": "Too many requests, please try again later",
            "internal_error": "System error, please try again later",
        },
        "placeholders": {
            "image_question": "[Image Upload]",
        },
    },
}


def t(key: str, locale: str = DEFAULT_LOCALE, **kwargs) -> str:
    """
    Get translated text for the given key and locale.

    Args:
        key: Dot-notation key (e.g., "errors.invalid_key")
        locale: Language code (zh-cn, zh-tw or en)
        **kwargs: Format parameters for string interpolation

    Returns:
        Translated text, or the key itself if not found
    """
    keys = key.split(".")
    value = TRANSLATIONS.get(locale, TRANSLATIONS[DEFAULT_LOCALE])

    for k in keys:
        if isinstance(value, dict):
            value = value.get(k, key)
        else:
            return key

    if isinstance(value, str) and kwargs:
        try:
            return value.format(**kwargs)
        except KeyError:
            return value

    return value if isinstance(value, str) else key


def normalize_locale(locale: str | None) -> str:
    """把 zh-CN / zh_TW / en-US 之类的写法归一到支持的语言代码"""
    if not locale:
        return DEFAULT_LOCALE
    value = locale.strip().lower().replace("_", "-")
    if value in SUPPORTED_LOCALES:
        return value
    if value.startswith("zh-tw") or value.startswith("zh-hk") or value.startswith("zh-hant"):
        return "zh-tw"
    if value.startswith("zh"):
        return "zh-cn"
    if value.startswith("en"):
        return "en"
    return DEFAULT_LOCALE


def get_locale_from_header(accept_language: str | None) -> str:
    """
    Extract locale from Accept-Language header.

    Args:
        accept_language: Accept-Language header value

    Returns:
        Locale code (zh-cn, zh-tw or en), defaults to zh-cn
    """
    if not accept_language:
        return DEFAULT_LOCALE

    # Parse Accept-Language header (e.g., "en,zh-TW;q=0.9")
    for lang in accept_language.split(","):
        candidate = lang.split(";")[0].strip()
        if candidate.lower().startswith(("zh", "en")):
            return normalize_locale(candidate)

    return DEFAULT_LOCALE
