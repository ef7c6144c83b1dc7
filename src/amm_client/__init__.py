"""JSON-RPC binding for the AMM router and ERC20 token the bot trades."""
