"""Function selectors and transaction defaults for UniswapV2-style routers."""

# 4-byte selectors (first bytes of keccak256 of the canonical signature).
SELECTOR_BALANCE_OF = "70a08231"  # balanceOf(address)
SELECTOR_ALLOWANCE = "dd62ed3e"  # allowance(address,address)
SELECTOR_APPROVE = "095ea7b3"  # approve(address,uint256)
SELECTOR_DECIMALS = "313ce567"  # decimals()
SELECTOR_GET_AMOUNTS_OUT = "d06ca61f"  # getAmountsOut(uint256,address[])
# swapExactETHForTokensSupportingFeeOnTransferTokens(uint256,address[],address,uint256)
SELECTOR_SWAP_EXACT_ETH_FOR_TOKENS = "b6f9de95"
# swapExactTokensForETHSupportingFeeOnTransferTokens(uint256,uint256,address[],address,uint256)
SELECTOR_SWAP_EXACT_TOKENS_FOR_ETH = "791ac947"

DEFAULT_RPC_URL = "https://bsc-dataseed.binance.org"
DEFAULT_SWAP_GAS_LIMIT = 500_000
DEFAULT_APPROVE_GAS_LIMIT = 100_000
DEFAULT_RECEIPT_TIMEOUT_SEC = 300.0
DEFAULT_RECEIPT_POLL_SEC = 3.0
