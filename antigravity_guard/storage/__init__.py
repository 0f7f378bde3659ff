from .accounts import clear_accounts, load_accounts, read_accounts, save_accounts

__all__ = ["clear_accounts", "load_accounts", "read_accounts", "save_accounts"]
