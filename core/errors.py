class MarketplaceError(Exception):
    pass


class DuplicateKeyError(MarketplaceError):
    def __init__(self, collection: str, key: str):
        super().__init__(f"Duplicate key {key!r} in {collection}")
        self.collection = collection
        self.key = key
