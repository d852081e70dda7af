from wallavault.security.crypto import EncryptedStore
from wallavault.security.keys import KeyProvider, KeyringKeyProvider, StoreKeyProvider

__all__ = ["EncryptedStore", "KeyProvider", "KeyringKeyProvider", "StoreKeyProvider"]
