"""
Instruction builders for the token program.

Thin adapter over solders and solana-py's spl package. Returns opaque
Instruction values; nothing here talks to the network.
"""

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import CreateAccountParams, create_account
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, MINT_LEN, TOKEN_PROGRAM_ID
from spl.token.instructions import initialize_mint, mint_to, transfer
from spl.token.models import InitializeMintParams, MintToParams, TransferParams

# Associated token program instruction tag for CreateIdempotent
_CREATE_IDEMPOTENT = bytes([1])


def create_mint_instructions(
    payer: Pubkey,
    mint: Pubkey,
    rent_lamports: int,
    decimals: int,
    mint_authority: Pubkey,
    freeze_authority: Pubkey | None = None
) -> list[Instruction]:
    """Allocate a mint account and initialize it, as one atomic batch.

    The mint keypair must co-sign the transaction carrying these.
    """
    allocate = create_account(
        CreateAccountParams(
            from_pubkey=payer,
            to_pubkey=mint,
            lamports=rent_lamports,
            space=MINT_LEN,
            owner=TOKEN_PROGRAM_ID,
        )
    )
    initialize = initialize_mint(
        InitializeMintParams(
            decimals=decimals,
            program_id=TOKEN_PROGRAM_ID,
            mint=mint,
            mint_authority=mint_authority,
            freeze_authority=freeze_authority,
        )
    )
    return [allocate, initialize]


def associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    """Derive the holder-account address for (owner, mint)."""
    address, _bump = Pubkey.find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


def create_associated_account_idempotent(payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    """Create the holder account for (owner, mint); a no-op if it already exists."""
    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        data=_CREATE_IDEMPOTENT,
        accounts=[
            AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
            AccountMeta(pubkey=associated_token_address(owner, mint), is_signer=False, is_writable=True),
            AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ],
    )


def mint_to_instruction(mint: Pubkey, destination: Pubkey, authority: Pubkey, amount: int) -> Instruction:
    """Issue ``amount`` base units into a holder account."""
    return mint_to(
        MintToParams(
            program_id=TOKEN_PROGRAM_ID,
            mint=mint,
            dest=destination,
            mint_authority=authority,
            amount=amount,
        )
    )


def transfer_instruction(source: Pubkey, destination: Pubkey, owner: Pubkey, amount: int) -> Instruction:
    """Move ``amount`` base units between holder accounts of the same mint."""
    return transfer(
        TransferParams(
            program_id=TOKEN_PROGRAM_ID,
            source=source,
            dest=destination,
            owner=owner,
            amount=amount,
        )
    )
