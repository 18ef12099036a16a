"""Head Over Feels storefront: limited-edition drops, cart holds and checkout."""
