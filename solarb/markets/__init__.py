"""Per-exchange pool loaders, account layouts, quote helpers and streams."""