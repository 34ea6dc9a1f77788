"""Thin web3.py adapter around the subsidy contract plus pure chain utilities."""
import logging
import re
import secrets
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from web3 import Web3
from web3.logs import DISCARD

from utils.errors import UpstreamError

CONTRACT_ABI = [
    {
        "inputs": [
            {"name": "_projectId", "type": "string"},
            {"name": "_producer", "type": "address"},
            {"name": "_totalSubsidy", "type": "uint256"},
            {"name": "_metadata", "type": "string"},
        ],
        "name": "createProject",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "_projectId", "type": "string"},
            {"name": "_milestoneId", "type": "string"},
            {"name": "_subsidyAmount", "type": "uint256"},
            {"name": "_dueDate", "type": "uint256"},
        ],
        "name": "createMilestone",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "_milestoneId", "type": "string"},
            {"name": "_producer", "type": "address"},
        ],
        "name": "releaseSubsidy",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "projectId", "type": "string"},
            {"indexed": True, "name": "producer", "type": "address"},
            {"indexed": False, "name": "totalSubsidy", "type": "uint256"},
        ],
        "name": "ProjectCreated",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "projectId", "type": "string"},
            {"indexed": True, "name": "milestoneId", "type": "string"},
            {"indexed": False, "name": "subsidyAmount", "type": "uint256"},
        ],
        "name": "MilestoneCreated",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "milestoneId", "type": "string"},
            {"indexed": True, "name": "producer", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "SubsidyReleased",
        "type": "event",
    },
]

DEFAULT_GAS_LIMITS: Dict[str, int] = {
    "createProject": 500_000,
    "createMilestone": 300_000,
    "releaseSubsidy": 200_000,
}

# uint256 event fields denominated in wei.
WEI_EVENT_FIELDS = frozenset({"totalSubsidy", "subsidyAmount", "amount"})

TX_HASH_PATTERN = re.compile(r"^0x[a-fA-F0-9]{64}$")

logger = logging.getLogger(__name__)


class BlockchainError(UpstreamError):
    """Raised when submission, confirmation, or an RPC read fails."""


def is_valid_address(value) -> bool:
    return isinstance(value, str) and Web3.is_address(value)


def is_valid_tx_hash(value) -> bool:
    return isinstance(value, str) and bool(TX_HASH_PATTERN.match(value))


def to_wei(amount) -> int:
    return int(Web3.to_wei(Decimal(str(amount)), "ether"))


def from_wei(value) -> float:
    return float(Web3.from_wei(int(value), "ether"))


def verify_signature(message: str, signature: str, expected_address: str) -> bool:
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as exc:
        logger.warning("Signature verification failed", extra={"error": str(exc)})
        return False
    return recovered.lower() == (expected_address or "").lower()


def sign_message(message: str, private_key: str) -> str:
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return Web3.to_hex(signed.signature)


def generate_nonce() -> str:
    return secrets.token_hex(16)


def format_address(address: str) -> str:
    if not address or len(address) < 10:
        return address or ""
    return f"{address[:6]}...{address[-4:]}"


def _json_safe(value):
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return value


class BlockchainClient:
    """One signing account bound to one contract handle.

    Every write blocks until the receipt arrives. Failures surface as
    ``BlockchainError``; nothing is retried.
    """

    def __init__(
        self,
        rpc_url: str,
        contract_address: Optional[str],
        private_key: Optional[str],
        chain_id: int,
        gas_limits: Optional[Dict[str, int]] = None,
        gas_price_wei: Optional[int] = None,
        tx_timeout: int = 120,
        network: str = "localhost",
        logger: Optional[logging.Logger] = None,
        web3: Optional[Web3] = None,
    ):
        self.logger = logger or logging.getLogger(__name__)
        self.web3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": tx_timeout}))
        self.chain_id = chain_id
        self.gas_limits = {**DEFAULT_GAS_LIMITS, **(gas_limits or {})}
        self.gas_price_wei = gas_price_wei
        self.tx_timeout = tx_timeout
        self.network = network
        self.contract_address = Web3.to_checksum_address(contract_address) if contract_address else None
        self._private_key = private_key or None
        self.account = Account.from_key(private_key) if private_key else None
        self.contract = None
        if self.contract_address and self.account:
            self.contract = self.web3.eth.contract(address=self.contract_address, abi=CONTRACT_ABI)
        elif not self.account:
            self.logger.warning("No private key provided for blockchain operations")

    @classmethod
    def from_config(cls, config, logger=None, web3=None) -> "BlockchainClient":
        return cls(
            rpc_url=config.get("BLOCKCHAIN_RPC_URL"),
            contract_address=config.get("CONTRACT_ADDRESS") or None,
            private_key=config.get("PRIVATE_KEY") or None,
            chain_id=int(config.get("CHAIN_ID", 1337)),
            gas_limits=config.get("GAS_LIMITS"),
            gas_price_wei=config.get("GAS_PRICE_WEI"),
            tx_timeout=int(config.get("BLOCKCHAIN_TX_TIMEOUT", 120)),
            network=config.get("BLOCKCHAIN_NETWORK", "localhost"),
            logger=logger,
            web3=web3,
        )

    @property
    def configured(self) -> bool:
        return self.contract is not None

    def _transact(self, function_name: str, args: tuple, event_name: Optional[str] = None) -> Dict[str, Any]:
        if not self.configured:
            raise BlockchainError("Blockchain service not initialized")

        gas_limit = self.gas_limits[function_name]
        try:
            call = getattr(self.contract.functions, function_name)(*args)
            tx = call.build_transaction(
                {
                    "from": self.account.address,
                    "nonce": self.web3.eth.get_transaction_count(self.account.address),
                    "gas": gas_limit,
                    "gasPrice": self.gas_price_wei or self.web3.eth.gas_price,
                    "chainId": self.chain_id,
                }
            )
            signed = self.web3.eth.account.sign_transaction(tx, private_key=self._private_key)
            tx_hash = self.web3.eth.send_raw_transaction(signed.raw_transaction)
            self.logger.info(
                "Blockchain transaction sent",
                extra={"function": function_name, "tx_hash": Web3.to_hex(tx_hash)},
            )
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        except Exception as exc:
            self.logger.error(
                "Blockchain transaction failed",
                extra={"function": function_name, "error": str(exc)},
            )
            raise BlockchainError(f"{function_name} failed: {exc}") from exc

        if receipt.get("status") == 0:
            raise BlockchainError(f"{function_name} reverted in block {receipt.get('blockNumber')}")

        result = {
            "transactionHash": Web3.to_hex(receipt["transactionHash"]),
            "blockNumber": receipt["blockNumber"],
            "gasUsed": receipt["gasUsed"],
            "eventData": self._parse_event(event_name, receipt) if event_name else None,
        }
        self.logger.info("Blockchain transaction confirmed", extra={"function": function_name, **result})
        return result

    def _parse_event(self, event_name: str, receipt) -> Optional[Dict[str, Any]]:
        events = getattr(self.contract.events, event_name)().process_receipt(receipt, errors=DISCARD)
        if not events:
            return None
        data = {}
        for key, value in dict(events[0]["args"]).items():
            data[key] = from_wei(value) if key in WEI_EVENT_FIELDS else _json_safe(value)
        return data

    def create_project(self, project_id: str, producer_address: str, total_subsidy, metadata: str = "") -> Dict[str, Any]:
        self.logger.info("Creating project on blockchain", extra={"project_id": project_id})
        return self._transact(
            "createProject",
            (project_id, Web3.to_checksum_address(producer_address), to_wei(total_subsidy), metadata or ""),
            event_name="ProjectCreated",
        )

    def create_milestone(self, project_id: str, milestone_id: str, subsidy_amount, due_date: datetime) -> Dict[str, Any]:
        self.logger.info("Creating milestone on blockchain", extra={"project_id": project_id, "milestone_id": milestone_id})
        return self._transact(
            "createMilestone",
            (project_id, milestone_id, to_wei(subsidy_amount), int(due_date.timestamp())),
            event_name="MilestoneCreated",
        )

    def release_subsidy(self, milestone_id: str, producer_address: str) -> Dict[str, Any]:
        self.logger.info("Releasing subsidy on blockchain", extra={"milestone_id": milestone_id})
        return self._transact(
            "releaseSubsidy",
            (milestone_id, Web3.to_checksum_address(producer_address)),
            event_name="SubsidyReleased",
        )

    def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        try:
            tx = self.web3.eth.get_transaction(tx_hash)
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except Exception as exc:
            raise BlockchainError(f"Failed to get transaction details: {exc}") from exc
        return {
            "transaction": {
                "hash": Web3.to_hex(tx["hash"]),
                "from": tx["from"],
                "to": tx["to"],
                "value": from_wei(tx["value"]),
                "gasPrice": str(tx.get("gasPrice")),
                "gasLimit": str(tx.get("gas")),
                "nonce": tx["nonce"],
                "blockNumber": tx.get("blockNumber"),
            },
            "receipt": {
                "status": receipt["status"],
                "gasUsed": str(receipt["gasUsed"]),
                "blockNumber": receipt["blockNumber"],
            }
            if receipt
            else None,
        }

    def get_balance(self, address: str) -> float:
        try:
            return from_wei(self.web3.eth.get_balance(Web3.to_checksum_address(address)))
        except Exception as exc:
            raise BlockchainError(f"Failed to get balance: {exc}") from exc

    def get_gas_price(self) -> Dict[str, str]:
        try:
            return {"gasPrice": str(self.web3.eth.gas_price)}
        except Exception as exc:
            raise BlockchainError(f"Failed to get gas price: {exc}") from exc

    def test_connection(self) -> Dict[str, Any]:
        try:
            status = {"connected": bool(self.web3.is_connected()), "chainId": self.web3.eth.chain_id}
        except Exception as exc:
            raise BlockchainError(f"Blockchain connection test failed: {exc}") from exc
        if self.account:
            status["wallet"] = self.account.address
        return status
