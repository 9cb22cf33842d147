"""ABI fragments of the ticket revocation contract."""

REVOCATION_CONTRACT_ABI: list[dict] = [
    {
        "type": "function",
        "name": "getTicketStatus",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function",
        "name": "isRevoked",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "revokeTicket",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "batchRevokeTickets",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "tokenIds", "type": "uint256[]"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "owner",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
]
