"""Order-fulfillment saga between the Orders and Inventory services."""
