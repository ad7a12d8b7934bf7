# tests/test_svm.py
"""
Unit tests for the Solana legacy transaction codec.
"""
import hashlib

import pytest

from app.core.config import USDC_MINT
from app.x402.svm import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    COMPUTE_BUDGET_PROGRAM_ID,
    EMPTY_SIGNATURE,
    MEMO_PROGRAM_ID,
    PACKET_DATA_SIZE,
    TOKEN_PROGRAM_ID,
    Instruction,
    Message,
    Transaction,
    TransactionDecodeError,
    decode_pubkey,
    decode_transfer_checked,
    encode_pubkey,
    find_program_address,
    get_associated_token_address,
    is_on_curve,
    memo,
    set_compute_unit_limit,
    set_compute_unit_price,
    transfer_checked,
)

from conftest import BLOCKHASH, PAY_TO, SOURCE_ACCOUNT, build_transaction


class TestPubkeys:
    """Test base58 public key helpers."""

    def test_usdc_mint_decodes_to_32_bytes(self):
        assert len(decode_pubkey(USDC_MINT)) == 32

    def test_round_trip(self):
        raw = bytes(range(32))
        assert decode_pubkey(encode_pubkey(raw)) == raw

    def test_wrong_length_rejected(self):
        with pytest.raises(ValueError, match="expected 32 bytes"):
            decode_pubkey(encode_pubkey(b"\x01" * 16))

    def test_non_base58_rejected(self):
        """0, O, I and l are not in the base58 alphabet."""
        with pytest.raises(ValueError):
            decode_pubkey("0OIl")


class TestMessageCompile:
    """Test account ordering when compiling instructions."""

    def test_payer_first_and_only_signer(self, signer):
        tx = build_transaction(signer, sign=False)
        message = tx.message

        assert message.fee_payer == signer.pubkey()
        assert message.num_required_signatures == 1
        assert message.num_readonly_signed_accounts == 0
        assert message.signer_keys == [signer.pubkey()]

    def test_account_groups(self, signer):
        """Writable non-signers come before readonly ones."""
        message = build_transaction(signer, sign=False).message

        keys = message.account_keys
        assert keys.index(SOURCE_ACCOUNT) < keys.index(USDC_MINT)
        assert keys.index(PAY_TO) < keys.index(TOKEN_PROGRAM_ID)
        assert message.is_writable(keys.index(SOURCE_ACCOUNT))
        assert message.is_writable(keys.index(PAY_TO))
        assert not message.is_writable(keys.index(USDC_MINT))
        assert not message.is_writable(keys.index(TOKEN_PROGRAM_ID))
        assert not message.is_signer(keys.index(PAY_TO))

    def test_duplicate_accounts_merged(self, signer):
        """An account used twice appears once, with the union of its flags."""
        message = Message.compile(
            signer.pubkey(),
            [memo("a"), memo("b"), set_compute_unit_limit(1)],
            BLOCKHASH,
        )
        assert message.account_keys.count(MEMO_PROGRAM_ID) == 1
        assert len(message.account_keys) == 3


class TestTransactionSerialization:
    """Test transaction wire format."""

    def test_round_trip(self, signer):
        tx = build_transaction(signer)

        parsed = Transaction.from_bytes(tx.serialize())

        assert parsed.signatures == tx.signatures
        assert parsed.message == tx.message
        assert parsed.serialize() == tx.serialize()

    def test_unsigned_has_empty_signature(self, signer):
        tx = build_transaction(signer, sign=False)

        assert tx.signatures == [EMPTY_SIGNATURE]
        assert tx.signature is None
        assert tx.signature_for(signer.pubkey()) is None

    def test_signed_transaction_signature(self, signer):
        tx = build_transaction(signer)

        assert tx.signature_for(signer.pubkey()) == tx.signatures[0]
        assert tx.signature is not None

    def test_signature_verifies(self, signer):
        """The signature covers the serialized message."""
        from nacl.signing import VerifyKey

        tx = build_transaction(signer)
        VerifyKey(decode_pubkey(signer.pubkey())).verify(tx.message.serialize(), tx.signatures[0])

    def test_signature_for_non_signer(self, signer):
        tx = build_transaction(signer)
        assert tx.signature_for(PAY_TO) is None

    def test_add_signature_rejects_non_signer(self, signer):
        tx = build_transaction(signer, sign=False)
        with pytest.raises(ValueError, match="not a required signer"):
            tx.add_signature(PAY_TO, b"\x01" * 64)

    def test_add_signature_rejects_bad_length(self, signer):
        tx = build_transaction(signer, sign=False)
        with pytest.raises(ValueError, match="64 bytes"):
            tx.add_signature(signer.pubkey(), b"\x01" * 10)


class TestTransactionDecodeErrors:
    """Test rejection of malformed transaction bytes."""

    def test_garbage(self):
        with pytest.raises(TransactionDecodeError):
            Transaction.from_bytes(b"\x01\x02\x03")

    def test_empty(self):
        with pytest.raises(TransactionDecodeError):
            Transaction.from_bytes(b"")

    def test_trailing_bytes(self, signer):
        raw = build_transaction(signer).serialize()
        with pytest.raises(TransactionDecodeError):
            Transaction.from_bytes(raw + b"\x00")

    def test_truncated(self, signer):
        raw = build_transaction(signer).serialize()
        with pytest.raises(TransactionDecodeError):
            Transaction.from_bytes(raw[:-1])

    def test_oversized(self):
        with pytest.raises(TransactionDecodeError, match="byte limit"):
            Transaction.from_bytes(b"\x00" * (PACKET_DATA_SIZE + 1))

    def test_versioned_message_rejected(self, signer):
        raw = bytearray(build_transaction(signer).serialize())
        # 1-byte signature count, 64-byte signature, then the message header
        raw[65] |= 0x80
        with pytest.raises(TransactionDecodeError):
            Transaction.from_bytes(bytes(raw))

    def test_signature_count_mismatch(self, signer):
        tx = build_transaction(signer)
        tx.signatures.append(EMPTY_SIGNATURE)
        with pytest.raises(TransactionDecodeError, match="signatures"):
            Transaction.from_bytes(tx.serialize())

    def test_program_index_out_of_range(self, signer):
        tx = build_transaction(signer)
        tx.message.instructions[0].program_id_index = len(tx.message.account_keys)
        with pytest.raises(TransactionDecodeError, match="program index"):
            Transaction.from_bytes(tx.serialize())

    def test_account_index_out_of_range(self, signer):
        tx = build_transaction(signer)
        tx.message.instructions[0].accounts[0] = 200
        with pytest.raises(TransactionDecodeError, match="account index"):
            Transaction.from_bytes(tx.serialize())


class TestInstructions:
    """Test instruction builders and decoders."""

    def test_transfer_checked_decode(self, signer):
        tx = build_transaction(signer, amount=12345, decimals=6)
        [ix] = tx.message.instructions_for_program(TOKEN_PROGRAM_ID)

        transfer = decode_transfer_checked(ix)

        assert transfer.source == SOURCE_ACCOUNT
        assert transfer.mint == USDC_MINT
        assert transfer.destination == PAY_TO
        assert transfer.owner == signer.pubkey()
        assert transfer.amount == 12345
        assert transfer.decimals == 6

    def test_transfer_checked_data_layout(self):
        ix = transfer_checked(SOURCE_ACCOUNT, USDC_MINT, PAY_TO, SOURCE_ACCOUNT, 10_000, 6)
        assert ix.data == bytes([12]) + (10_000).to_bytes(8, "little") + bytes([6])

    def test_plain_transfer_rejected(self):
        """Token instruction 3 (Transfer) is not TransferChecked."""
        ix = transfer_checked(SOURCE_ACCOUNT, USDC_MINT, PAY_TO, SOURCE_ACCOUNT, 10_000, 6)
        ix.data = bytes([3]) + ix.data[1:]
        with pytest.raises(ValueError, match="not transferChecked"):
            decode_transfer_checked(ix)

    def test_short_data_rejected(self):
        ix = Instruction(program_id=TOKEN_PROGRAM_ID, accounts=transfer_checked(
            SOURCE_ACCOUNT, USDC_MINT, PAY_TO, SOURCE_ACCOUNT, 1, 6).accounts, data=b"\x0c")
        with pytest.raises(ValueError, match="Malformed"):
            decode_transfer_checked(ix)

    def test_missing_accounts_rejected(self):
        ix = Instruction(program_id=TOKEN_PROGRAM_ID, accounts=[], data=b"\x0c" + bytes(9))
        with pytest.raises(ValueError, match="requires"):
            decode_transfer_checked(ix)

    def test_memo_has_no_accounts(self):
        ix = memo("x402:abc")
        assert ix.program_id == MEMO_PROGRAM_ID
        assert ix.accounts == []
        assert ix.data == b"x402:abc"

    def test_compute_budget_layouts(self):
        limit = set_compute_unit_limit(130_000)
        price = set_compute_unit_price(0)

        assert limit.program_id == COMPUTE_BUDGET_PROGRAM_ID
        assert limit.data == bytes([2]) + (130_000).to_bytes(4, "little")
        assert price.data == bytes([3]) + bytes(8)


class TestAssociatedTokenAddress:
    """Test program derived addresses."""

    def test_wallet_keys_are_on_curve(self, signer):
        assert is_on_curve(decode_pubkey(signer.pubkey())) is True

    def test_identity_point_on_curve(self):
        assert is_on_curve(bytes([1]) + bytes(31)) is True

    def test_address_is_off_curve(self, signer):
        address = get_associated_token_address(signer.pubkey(), USDC_MINT)
        assert is_on_curve(decode_pubkey(address)) is False

    def test_address_hashes_seeds_with_bump(self, signer):
        seeds = [decode_pubkey(signer.pubkey()), decode_pubkey(TOKEN_PROGRAM_ID), decode_pubkey(USDC_MINT)]
        address, bump = find_program_address(seeds, ASSOCIATED_TOKEN_PROGRAM_ID)

        digest = hashlib.sha256(
            b"".join(seeds) + bytes([bump]) + decode_pubkey(ASSOCIATED_TOKEN_PROGRAM_ID) + b"ProgramDerivedAddress"
        ).digest()
        assert address == encode_pubkey(digest)
        assert address == get_associated_token_address(signer.pubkey(), USDC_MINT)
        assert 0 <= bump <= 255

    def test_differs_per_owner_and_mint(self, signer):
        address = get_associated_token_address(signer.pubkey(), USDC_MINT)

        assert get_associated_token_address(PAY_TO, USDC_MINT) != address
        assert get_associated_token_address(signer.pubkey(), SOURCE_ACCOUNT) != address

    def test_long_seed_rejected(self):
        with pytest.raises(ValueError, match="longer than 32"):
            find_program_address([bytes(33)], ASSOCIATED_TOKEN_PROGRAM_ID)
