from dataclasses import dataclass

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from pst_core.errors import BadSignature

from .codec import Instruction, decode_instruction, encode_instruction


def signing_message(record_id: str, data: bytes) -> bytes:
    return record_id.encode("utf-8") + b"\x00" + data


@dataclass(frozen=True)
class SignedInstruction:
    record_id: str
    data: bytes
    signer: bytes
    signature: bytes

    @property
    def instruction(self) -> Instruction:
        return decode_instruction(self.data)

    def verified_signer(self) -> bytes:
        """Return the signer's key, or raise BadSignature."""
        message = signing_message(self.record_id, self.data)
        try:
            VerifyKey(self.signer).verify(message, self.signature)
        except BadSignatureError:
            raise BadSignature(record_id=self.record_id) from None
        return self.signer


def sign_instruction(signing_key: SigningKey, record_id: str, ix: Instruction) -> SignedInstruction:
    data = encode_instruction(ix)
    sig = signing_key.sign(signing_message(record_id, data)).signature
    return SignedInstruction(
        record_id=record_id,
        data=data,
        signer=bytes(signing_key.verify_key),
        signature=sig,
    )
