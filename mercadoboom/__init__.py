"""MercadoBoom storefront backend."""
