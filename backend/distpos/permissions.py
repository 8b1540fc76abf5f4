"""
Capability definitions for the order engine.

WHY: Settlement gates (credit sales, selling without stock, step-up
approval) name capabilities rather than roles, so a role can be widened or
a single user granted/denied one capability without code changes.
"""

# =============================================================================
# CAPABILITY CODES
# =============================================================================

CREATE_SALE = "CREATE_SALE"
CREDIT_SALES = "CREDIT_SALES"
SELL_WITHOUT_STOCK = "SELL_WITHOUT_STOCK"
APPROVE_OVERRIDES = "APPROVE_OVERRIDES"
DELETE_ORDERS = "DELETE_ORDERS"


# Each capability is defined as: (code, name, description)
CAPABILITY_DEFINITIONS = [
    (CREATE_SALE, "Create Sale", "Build, save and settle orders"),
    (CREDIT_SALES, "Credit Sales", "Settle orders fully or partly on client credit"),
    (SELL_WITHOUT_STOCK, "Sell Without Stock", "Settle orders whose items exceed available stock"),
    (APPROVE_OVERRIDES, "Approve Overrides",
     "Authorize credit-limit overruns and below-cost prices (step-up credential)"),
    (DELETE_ORDERS, "Delete Orders", "Cancel or delete persisted orders"),
]

CAPABILITY_CODES = {code for code, _, _ in CAPABILITY_DEFINITIONS}


# =============================================================================
# DEFAULT ROLE MAPPINGS
# =============================================================================

DEFAULT_ROLE_CAPABILITIES = {
    "admin": set(CAPABILITY_CODES),
    "manager": {CREATE_SALE, CREDIT_SALES, SELL_WITHOUT_STOCK, APPROVE_OVERRIDES},
    "cashier": {CREATE_SALE},
}

VALID_ROLES = set(DEFAULT_ROLE_CAPABILITIES)
