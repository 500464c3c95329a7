import unittest

from agentrelay.services.language import detect_language, language_directive, with_language_directive


class DetectLanguageTests(unittest.TestCase):
    def test_turkish_characters_and_words(self):
        self.assertEqual(detect_language("Merhaba, yarın için randevu almak istiyorum"), "tr")

    def test_english_question(self):
        self.assertEqual(detect_language("What is the weather in London?"), "en")

    def test_empty_text_defaults_to_english(self):
        self.assertEqual(detect_language(""), "en")
        self.assertEqual(detect_language("12345"), "en")

    def test_ascii_turkish_words_still_detected(self):
        self.assertEqual(detect_language("bu nedir"), "tr")


class LanguageDirectiveTests(unittest.TestCase):
    def test_directive_is_appended_after_blank_line(self):
        self.assertEqual(
            with_language_directive("Hello", "en"),
            "Hello\n\n[System: Please respond in English.]",
        )

    def test_unknown_language_falls_back_to_english(self):
        self.assertEqual(language_directive("de"), "[System: Please respond in English.]")
        self.assertEqual(language_directive("tr"), "[Sistem: Bu soruyu Türkçe yanıtla.]")


if __name__ == "__main__":
    unittest.main()
