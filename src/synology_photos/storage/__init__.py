from .device_token import load_device_credential, save_device_credential

__all__ = [
    "load_device_credential",
    "save_device_credential",
]
