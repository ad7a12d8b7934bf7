# app/x402/svm.py
"""
Solana legacy transaction codec.

Parses and builds the transaction wire format used by x402 ``exact`` payments
on Solana, and decodes/encodes the handful of instructions a payment carries:

- SPL Token ``TransferChecked`` (the payment itself)
- Memo (the ``x402:<reference>`` tag)
- Compute budget unit limit / unit price

It also derives associated token account addresses.

Public keys and blockhashes are handled as base58 strings. Signatures are raw
64-byte values, an all-zero signature meaning "not signed yet".

Versioned (v0) transactions are not supported and fail to decode.
"""
import hashlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import base58
from construct import (
    Bytes,
    ConstructError,
    GreedyBytes,
    Int8ul,
    Int32ul,
    Int64ul,
    Prefixed,
    PrefixedArray,
    Struct,
    Terminated,
    VarInt,
)

TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
MEMO_PROGRAM_ID = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"
COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"
ASSOCIATED_TOKEN_PROGRAM_ID = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"

PUBKEY_LENGTH = 32
SIGNATURE_LENGTH = 64
EMPTY_SIGNATURE = bytes(SIGNATURE_LENGTH)

# Maximum serialized transaction size accepted by the network
PACKET_DATA_SIZE = 1232

# Instruction discriminators
TRANSFER_CHECKED_INSTRUCTION = 12
SET_COMPUTE_UNIT_LIMIT_INSTRUCTION = 2
SET_COMPUTE_UNIT_PRICE_INSTRUCTION = 3

# Array lengths on the wire are compact-u16, a 7-bit little-endian varint,
# which is exactly construct's VarInt.
COMPILED_INSTRUCTION_LAYOUT = Struct(
    "program_id_index" / Int8ul,
    "accounts" / PrefixedArray(VarInt, Int8ul),
    "data" / Prefixed(VarInt, GreedyBytes),
)

MESSAGE_LAYOUT = Struct(
    "num_required_signatures" / Int8ul,
    "num_readonly_signed_accounts" / Int8ul,
    "num_readonly_unsigned_accounts" / Int8ul,
    "account_keys" / PrefixedArray(VarInt, Bytes(PUBKEY_LENGTH)),
    "recent_blockhash" / Bytes(PUBKEY_LENGTH),
    "instructions" / PrefixedArray(VarInt, COMPILED_INSTRUCTION_LAYOUT),
)

TRANSACTION_LAYOUT = Struct(
    "signatures" / PrefixedArray(VarInt, Bytes(SIGNATURE_LENGTH)),
    "message" / MESSAGE_LAYOUT,
    Terminated,
)

TRANSFER_CHECKED_LAYOUT = Struct(
    "instruction" / Int8ul,
    "amount" / Int64ul,
    "decimals" / Int8ul,
)

COMPUTE_UNIT_LIMIT_LAYOUT = Struct(
    "instruction" / Int8ul,
    "units" / Int32ul,
)

COMPUTE_UNIT_PRICE_LAYOUT = Struct(
    "instruction" / Int8ul,
    "micro_lamports" / Int64ul,
)


class TransactionDecodeError(ValueError):
    """Raised when bytes are not a well-formed legacy Solana transaction."""


def encode_pubkey(raw: bytes) -> str:
    """Encode 32 raw bytes as a base58 public key."""
    return base58.b58encode(bytes(raw)).decode("ascii")


def decode_pubkey(value: str) -> bytes:
    """
    Decode a base58 public key (or blockhash) into 32 raw bytes.

    Raises:
        ValueError: If the value is not base58 or not 32 bytes long
    """
    try:
        raw = base58.b58decode(value)
    except ValueError as e:
        raise ValueError(f"Invalid public key {value!r}: {e}") from e
    if len(raw) != PUBKEY_LENGTH:
        raise ValueError(f"Invalid public key {value!r}: expected {PUBKEY_LENGTH} bytes, got {len(raw)}")
    return raw


@dataclass(frozen=True)
class AccountMeta:
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass
class Instruction:
    """An instruction with its accounts resolved to public keys."""
    program_id: str
    accounts: List[AccountMeta] = field(default_factory=list)
    data: bytes = b""


@dataclass
class CompiledInstruction:
    """An instruction as stored in a message: indexes into the account keys."""
    program_id_index: int
    accounts: List[int]
    data: bytes


@dataclass
class Message:
    num_required_signatures: int
    num_readonly_signed_accounts: int
    num_readonly_unsigned_accounts: int
    account_keys: List[str]
    recent_blockhash: str
    instructions: List[CompiledInstruction]

    @property
    def fee_payer(self) -> str:
        """The first account key always pays the fees."""
        return self.account_keys[0]

    @property
    def signer_keys(self) -> List[str]:
        return self.account_keys[:self.num_required_signatures]

    def is_signer(self, index: int) -> bool:
        return index < self.num_required_signatures

    def is_writable(self, index: int) -> bool:
        if index < self.num_required_signatures:
            return index < self.num_required_signatures - self.num_readonly_signed_accounts
        return index < len(self.account_keys) - self.num_readonly_unsigned_accounts

    def program_id(self, instruction: CompiledInstruction) -> str:
        return self.account_keys[instruction.program_id_index]

    def decompile(self, instruction: CompiledInstruction) -> Instruction:
        """Resolve a compiled instruction's account indexes to AccountMetas."""
        return Instruction(
            program_id=self.program_id(instruction),
            accounts=[
                AccountMeta(
                    pubkey=self.account_keys[i],
                    is_signer=self.is_signer(i),
                    is_writable=self.is_writable(i),
                )
                for i in instruction.accounts
            ],
            data=instruction.data,
        )

    def instructions_for_program(self, program_id: str) -> List[Instruction]:
        return [
            self.decompile(ix) for ix in self.instructions
            if self.program_id(ix) == program_id
        ]

    def to_container(self) -> dict:
        return {
            "num_required_signatures": self.num_required_signatures,
            "num_readonly_signed_accounts": self.num_readonly_signed_accounts,
            "num_readonly_unsigned_accounts": self.num_readonly_unsigned_accounts,
            "account_keys": [decode_pubkey(key) for key in self.account_keys],
            "recent_blockhash": decode_pubkey(self.recent_blockhash),
            "instructions": [
                {
                    "program_id_index": ix.program_id_index,
                    "accounts": list(ix.accounts),
                    "data": bytes(ix.data),
                }
                for ix in self.instructions
            ],
        }

    def serialize(self) -> bytes:
        """Serialize the message. These are the bytes every signer signs."""
        return MESSAGE_LAYOUT.build(self.to_container())

    @classmethod
    def compile(cls, payer: str, instructions: List[Instruction], recent_blockhash: str) -> "Message":
        """
        Compile instructions into a message paid for by ``payer``.

        Accounts are ordered writable signers, readonly signers, writable
        non-signers, readonly non-signers, each group in first-seen order with
        the payer first.
        """
        # pubkey -> [is_signer, is_writable], insertion ordered
        flags: Dict[str, List[bool]] = {payer: [True, True]}
        for ix in instructions:
            for meta in ix.accounts:
                entry = flags.setdefault(meta.pubkey, [False, False])
                entry[0] = entry[0] or meta.is_signer
                entry[1] = entry[1] or meta.is_writable
            flags.setdefault(ix.program_id, [False, False])

        writable_signers, readonly_signers, writable, readonly = [], [], [], []
        for key, (is_signer, is_writable) in flags.items():
            if is_signer:
                (writable_signers if is_writable else readonly_signers).append(key)
            else:
                (writable if is_writable else readonly).append(key)

        account_keys = writable_signers + readonly_signers + writable + readonly
        index = {key: i for i, key in enumerate(account_keys)}

        return cls(
            num_required_signatures=len(writable_signers) + len(readonly_signers),
            num_readonly_signed_accounts=len(readonly_signers),
            num_readonly_unsigned_accounts=len(readonly),
            account_keys=account_keys,
            recent_blockhash=recent_blockhash,
            instructions=[
                CompiledInstruction(
                    program_id_index=index[ix.program_id],
                    accounts=[index[meta.pubkey] for meta in ix.accounts],
                    data=bytes(ix.data),
                )
                for ix in instructions
            ],
        )


@dataclass
class Transaction:
    signatures: List[bytes]
    message: Message

    @classmethod
    def new_unsigned(cls, message: Message) -> "Transaction":
        return cls(
            signatures=[EMPTY_SIGNATURE] * message.num_required_signatures,
            message=message,
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> "Transaction":
        """
        Deserialize a legacy transaction.

        Raises:
            TransactionDecodeError: If the bytes are not a well-formed legacy
                transaction (bad layout, trailing bytes, out-of-range account
                indexes, signature count mismatch, versioned message...)
        """
        if len(raw) > PACKET_DATA_SIZE:
            raise TransactionDecodeError(
                f"Transaction is {len(raw)} bytes, larger than the {PACKET_DATA_SIZE} byte limit"
            )
        try:
            parsed = TRANSACTION_LAYOUT.parse(raw)
        except ConstructError as e:
            raise TransactionDecodeError(f"Malformed transaction bytes: {e}") from e

        msg = parsed.message
        if msg.num_required_signatures & 0x80:
            raise TransactionDecodeError("Versioned transactions are not supported")

        key_count = len(msg.account_keys)
        if key_count == 0:
            raise TransactionDecodeError("Transaction has no account keys")
        if not 0 < msg.num_required_signatures <= key_count:
            raise TransactionDecodeError("Transaction header has an invalid signer count")
        if msg.num_readonly_signed_accounts >= msg.num_required_signatures:
            raise TransactionDecodeError("Transaction fee payer must be writable")
        if msg.num_required_signatures + msg.num_readonly_unsigned_accounts > key_count:
            raise TransactionDecodeError("Transaction header exceeds its account keys")
        if len(parsed.signatures) != msg.num_required_signatures:
            raise TransactionDecodeError(
                f"Transaction carries {len(parsed.signatures)} signatures, "
                f"header requires {msg.num_required_signatures}"
            )

        instructions = []
        for ix in msg.instructions:
            # Index 0 is the fee payer and can never be a program
            if not 0 < ix.program_id_index < key_count:
                raise TransactionDecodeError("Instruction program index out of range")
            if any(i >= key_count for i in ix.accounts):
                raise TransactionDecodeError("Instruction account index out of range")
            instructions.append(CompiledInstruction(
                program_id_index=ix.program_id_index,
                accounts=list(ix.accounts),
                data=bytes(ix.data),
            ))

        return cls(
            signatures=[bytes(sig) for sig in parsed.signatures],
            message=Message(
                num_required_signatures=msg.num_required_signatures,
                num_readonly_signed_accounts=msg.num_readonly_signed_accounts,
                num_readonly_unsigned_accounts=msg.num_readonly_unsigned_accounts,
                account_keys=[encode_pubkey(key) for key in msg.account_keys],
                recent_blockhash=encode_pubkey(msg.recent_blockhash),
                instructions=instructions,
            ),
        )

    def serialize(self) -> bytes:
        return TRANSACTION_LAYOUT.build({
            "signatures": [bytes(sig) for sig in self.signatures],
            "message": self.message.to_container(),
        })

    @property
    def fee_payer(self) -> str:
        return self.message.fee_payer

    @property
    def signature(self) -> Optional[str]:
        """The transaction id: the fee payer's signature in base58, if signed."""
        if not self.signatures or self.signatures[0] == EMPTY_SIGNATURE:
            return None
        return base58.b58encode(self.signatures[0]).decode("ascii")

    def signature_for(self, pubkey: str) -> Optional[bytes]:
        """Return the non-empty signature of ``pubkey``, or None."""
        signers = self.message.signer_keys
        if pubkey not in signers:
            return None
        sig = self.signatures[signers.index(pubkey)]
        if not sig or sig == EMPTY_SIGNATURE:
            return None
        return sig

    def add_signature(self, pubkey: str, signature: bytes) -> None:
        signers = self.message.signer_keys
        if pubkey not in signers:
            raise ValueError(f"{pubkey} is not a required signer of this transaction")
        if len(signature) != SIGNATURE_LENGTH:
            raise ValueError(f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(signature)}")
        self.signatures[signers.index(pubkey)] = bytes(signature)


@dataclass(frozen=True)
class TransferChecked:
    source: str
    mint: str
    destination: str
    owner: str
    amount: int
    decimals: int


def decode_transfer_checked(instruction: Instruction) -> TransferChecked:
    """
    Decode an SPL Token TransferChecked instruction.

    Raises:
        ValueError: If the instruction is not a TransferChecked instruction
    """
    if instruction.program_id != TOKEN_PROGRAM_ID:
        raise ValueError(f"Instruction program {instruction.program_id} is not the token program")
    if len(instruction.accounts) < 4:
        raise ValueError("TransferChecked requires source, mint, destination and owner accounts")
    try:
        parsed = TRANSFER_CHECKED_LAYOUT.parse(instruction.data)
    except ConstructError as e:
        raise ValueError(f"Malformed token instruction data: {e}") from e
    if parsed.instruction != TRANSFER_CHECKED_INSTRUCTION:
        raise ValueError(f"Token instruction {parsed.instruction} is not transferChecked")

    source, mint, destination, owner = (meta.pubkey for meta in instruction.accounts[:4])
    return TransferChecked(
        source=source,
        mint=mint,
        destination=destination,
        owner=owner,
        amount=parsed.amount,
        decimals=parsed.decimals,
    )


def transfer_checked(
    source: str,
    mint: str,
    destination: str,
    owner: str,
    amount: int,
    decimals: int,
) -> Instruction:
    """Build an SPL Token TransferChecked instruction."""
    return Instruction(
        program_id=TOKEN_PROGRAM_ID,
        accounts=[
            AccountMeta(source, is_signer=False, is_writable=True),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(destination, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ],
        data=TRANSFER_CHECKED_LAYOUT.build({
            "instruction": TRANSFER_CHECKED_INSTRUCTION,
            "amount": amount,
            "decimals": decimals,
        }),
    )


def memo(text: str) -> Instruction:
    """Build a memo instruction with no signer accounts."""
    return Instruction(program_id=MEMO_PROGRAM_ID, accounts=[], data=text.encode("utf-8"))


def set_compute_unit_limit(units: int) -> Instruction:
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        data=COMPUTE_UNIT_LIMIT_LAYOUT.build({
            "instruction": SET_COMPUTE_UNIT_LIMIT_INSTRUCTION,
            "units": units,
        }),
    )


def set_compute_unit_price(micro_lamports: int) -> Instruction:
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        data=COMPUTE_UNIT_PRICE_LAYOUT.build({
            "instruction": SET_COMPUTE_UNIT_PRICE_INSTRUCTION,
            "micro_lamports": micro_lamports,
        }),
    )


# Program derived addresses

# ed25519: p = 2^255 - 19, d = -121665/121666 mod p
_ED25519_P = 2 ** 255 - 19
_ED25519_D = -121665 * pow(121666, _ED25519_P - 2, _ED25519_P) % _ED25519_P

MAX_SEED_LENGTH = 32
PDA_MARKER = b"ProgramDerivedAddress"


def is_on_curve(raw: bytes) -> bool:
    """True when 32 bytes decompress to an ed25519 point (a key with a private key)."""
    y = int.from_bytes(raw, "little") & ((1 << 255) - 1)
    y2 = y * y % _ED25519_P
    u = (y2 - 1) % _ED25519_P
    v = (_ED25519_D * y2 + 1) % _ED25519_P
    if u == 0:
        return True
    if v == 0:
        return False
    x2 = u * pow(v, _ED25519_P - 2, _ED25519_P) % _ED25519_P
    # Euler's criterion: x^2 must be a square mod p
    return pow(x2, (_ED25519_P - 1) // 2, _ED25519_P) == 1


def find_program_address(seeds: List[bytes], program_id: str) -> Tuple[str, int]:
    """
    Find the program derived address for ``seeds`` under ``program_id``.

    Tries bump seeds from 255 down and returns the first hash that is off the
    ed25519 curve, with the bump used.

    Raises:
        ValueError: If a seed is too long or no bump yields a valid address
    """
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise ValueError(f"Seed is {len(seed)} bytes, longer than {MAX_SEED_LENGTH}")
    program = decode_pubkey(program_id)
    for bump in range(255, -1, -1):
        digest = hashlib.sha256(b"".join(seeds) + bytes([bump]) + program + PDA_MARKER).digest()
        if not is_on_curve(digest):
            return encode_pubkey(digest), bump
    raise ValueError(f"No program address found for {program_id}")


def get_associated_token_address(owner: str, mint: str) -> str:
    """The associated token account of ``owner`` for ``mint``."""
    address, _ = find_program_address(
        [decode_pubkey(owner), decode_pubkey(TOKEN_PROGRAM_ID), decode_pubkey(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address
