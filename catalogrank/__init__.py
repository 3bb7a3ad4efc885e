"""CatalogRank: popularity ranking engine for the anime, manga and review catalog."""
